from promorang.api import create_app

app = create_app()

if __name__ == "__main__":
    import uvicorn
    print("服务启动： http://127.0.0.1:8000/api/health")
    uvicorn.run(app, host="0.0.0.0", port=8000)

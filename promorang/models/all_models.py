# Import all models so Base.metadata.create_all() can see them.

from promorang.models.user import User  # noqa: F401
from promorang.models.admin import Admin, AdminLog  # noqa: F401
from promorang.models.ledger import Balance, LedgerEntry  # noqa: F401
from promorang.models.config import AppConfig, ConversionRule, TierMultiplier, StakeChannel  # noqa: F401
from promorang.models.content import Content, ContentShare  # noqa: F401
from promorang.models.drops import Drop, DropApplication  # noqa: F401
from promorang.models.growth import Stake, FundingProject  # noqa: F401
from promorang.models.payments import Payment  # noqa: F401
from promorang.models.partners import PartnerApp, PartnerUsage, WebhookEvent  # noqa: F401
from promorang.models.automations import CronJob  # noqa: F401

from fastapi import Depends
from sqlalchemy.orm import Session

from partner_messaging.core.service_factory import PartnerServices, get_factory
from partner_messaging.db.database import get_db


def get_partner_services(db: Session = Depends(get_db)) -> PartnerServices:
    """Request-scoped services sharing the process-wide HTTP client and token cache."""
    return get_factory().build(db)

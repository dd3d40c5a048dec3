"""Import SQLAlchemy models so ``Base.metadata`` knows every table."""

from sqlalchemy.engine import Engine

from clinicops.models.base import Base
from clinicops.models import (  # noqa: F401
    Appointment,
    Branch,
    Patient,
    Tenant,
    User,
    UserBranch,
)


def init_db(bind: Engine) -> None:
    """Create missing tables. Intended for local development and tests."""

    Base.metadata.create_all(bind=bind)


__all__ = [
    "Base",
    "Appointment",
    "Branch",
    "Patient",
    "Tenant",
    "User",
    "UserBranch",
    "init_db",
]

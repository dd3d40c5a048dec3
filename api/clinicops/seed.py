from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from clinicops.db.base import init_db
from clinicops.db.session import SessionLocal, engine
from clinicops.logging_utils import configure_logging, set_tenant_context
from clinicops.models import Branch, Role, Tenant, User, UserBranch
from clinicops.services.passwords import hash_password

logger = logging.getLogger(__name__)

TENANT_NAME = "Downtown Clinic Group"

BRANCHES: list[str] = ["Main Street Branch", "Eastside Branch"]

# username, password, role, branch names
USERS: list[tuple[str, str, Role, list[str]]] = [
    ("admin", "admin123", Role.ADMIN, ["Main Street Branch", "Eastside Branch"]),
    ("user", "user123", Role.USER, ["Main Street Branch"]),
    ("viewer", "viewer123", Role.VIEWER, ["Eastside Branch"]),
]


def ensure_tenant(session: Session) -> Tenant:
    tenant = session.execute(
        select(Tenant).where(Tenant.name == TENANT_NAME)
    ).scalar_one_or_none()
    if tenant:
        set_tenant_context(tenant.id)
        logger.info("tenant already present", extra={"seed_tenant_id": str(tenant.id)})
        return tenant

    tenant = Tenant(name=TENANT_NAME)
    session.add(tenant)
    session.flush()
    set_tenant_context(tenant.id)
    logger.info("created tenant", extra={"seed_tenant_id": str(tenant.id)})
    return tenant


def ensure_branches(session: Session, tenant: Tenant) -> dict[str, Branch]:
    created = 0
    branches: dict[str, Branch] = {}
    for name in BRANCHES:
        branch = session.execute(
            select(Branch).where(Branch.tenant_id == tenant.id, Branch.name == name)
        ).scalar_one_or_none()
        if not branch:
            branch = Branch(tenant_id=tenant.id, name=name)
            session.add(branch)
            session.flush()
            created += 1
        branches[name] = branch

    logger.info("ensured branches", extra={"created_count": created, "total": len(branches)})
    return branches


def ensure_users(session: Session, tenant: Tenant, branches: dict[str, Branch]) -> list[User]:
    created = 0
    users: list[User] = []
    for username, password, role, branch_names in USERS:
        user = session.execute(
            select(User).where(User.tenant_id == tenant.id, User.username == username)
        ).scalar_one_or_none()
        if not user:
            user = User(
                tenant_id=tenant.id,
                username=username,
                password_hash=hash_password(password),
                role=role,
            )
            session.add(user)
            session.flush()
            for branch_name in branch_names:
                session.add(
                    UserBranch(
                        tenant_id=tenant.id,
                        user_id=user.id,
                        branch_id=branches[branch_name].id,
                    )
                )
            created += 1
        users.append(user)

    session.flush()
    logger.info("ensured users", extra={"created_count": created, "total": len(users)})
    return users


def seed() -> None:
    configure_logging()
    logger.info("starting seed process")

    init_db(engine)
    session = SessionLocal()
    try:
        tenant = ensure_tenant(session)
        branches = ensure_branches(session, tenant)
        ensure_users(session, tenant, branches)
        session.commit()
        logger.info("seed complete", extra={"seed_tenant_id": str(tenant.id)})
    except Exception:
        session.rollback()
        logger.exception("seed failed")
        raise
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    seed()

"""SQLAlchemy models for the ClinicOps API."""

from clinicops.models.appointment import Appointment
from clinicops.models.branch import Branch
from clinicops.models.patient import Patient
from clinicops.models.tenant import Tenant
from clinicops.models.user import Role, User, UserBranch

__all__ = [
    "Appointment",
    "Branch",
    "Patient",
    "Role",
    "Tenant",
    "User",
    "UserBranch",
]

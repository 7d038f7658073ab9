"""
Auto-Code Generator Service

Generates tenant-wide sequential codes for:
  - Projects:         PRJ-{seq}           (e.g. PRJ-0001, PRJ-0042)
  - Change requests:  CR-{seq}            (e.g. CR-0001, CR-0137)
  - Invoices:         INV-{year}-{seq}    (e.g. INV-2026-0003)

Codes are unique per tenant (database constraint).  Soft-deleted rows keep
their code, so numbering never reuses one.  Two concurrent creators can
compute the same code; the unique constraint rejects the loser, which the
caller reports as a ConflictError (the client retries).
"""

from sqlalchemy import func

from app.models import db
from app.models.billing import Invoice
from app.models.change_request import ChangeRequest
from app.models.project import Project


def _generate_sequential_code(model_class, prefix: str, tenant_id: str, width: int = 4) -> str:
    """Generate next sequential code: {PREFIX}-{SEQ:0width}."""
    count = (
        db.session.query(func.count(model_class.id))
        .filter(model_class.tenant_id == tenant_id)
        .scalar()
    ) or 0
    return f"{prefix}-{count + 1:0{width}d}"


def generate_project_code(tenant_id: str) -> str:
    """PRJ-0001, PRJ-0002, ..."""
    return _generate_sequential_code(Project, "PRJ", tenant_id)


def generate_change_request_code(tenant_id: str) -> str:
    """CR-0001, CR-0002, ..."""
    return _generate_sequential_code(ChangeRequest, "CR", tenant_id)


def generate_invoice_number(tenant_id: str, year: int) -> str:
    """INV-{year}-0001; the sequence restarts every calendar year."""
    prefix = f"INV-{year}-"
    count = (
        db.session.query(func.count(Invoice.id))
        .filter(Invoice.tenant_id == tenant_id, Invoice.number.like(f"{prefix}%"))
        .scalar()
    ) or 0
    return f"{prefix}{count + 1:04d}"

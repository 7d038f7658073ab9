"""
Document versioning service.

Each upload appends an immutable ``DocumentVersion`` with
``max(version_number) + 1`` and moves the document's head pointer to it.
A revert appends a copy of an older snapshot and records
``reverted_from_version``; history rows are never rewritten.

Two concurrent uploads can compute the same next number; the loser hits
``uq_document_version`` and the upload is retried once with a fresh number.
"""

import hashlib
import logging
import re

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.document import DOCUMENT_CATEGORIES, DOCUMENT_STATUSES, Document, DocumentVersion
from app.models.project import Project
from app.services.helpers.scoped_queries import get_scoped
from app.services.outbox_service import enqueue_event
from app.services.project_service import require_editable

logger = logging.getLogger(__name__)

SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
COMPARED_FIELDS = ("file_name", "file_path", "file_hash", "file_size", "mime_type")


def _file_fields(data: dict) -> dict:
    """Validate the file part of an upload payload.

    ``file_hash`` may be omitted when raw ``content`` bytes are supplied;
    it is then computed here.
    """
    file_name = str(data.get("file_name") or "").strip()
    file_path = str(data.get("file_path") or "").strip()
    if not file_name or not file_path:
        raise ValidationError("file_name and file_path are required",
                              details={"file_name": file_name or "required",
                                       "file_path": file_path or "required"})

    content = data.get("content")
    file_hash = data.get("file_hash")
    if file_hash is None and content is not None:
        if isinstance(content, str):
            content = content.encode("utf-8")
        file_hash = hashlib.sha256(content).hexdigest()
    file_hash = str(file_hash or "").lower()
    if not SHA256_RE.match(file_hash):
        raise ValidationError("file_hash must be a SHA-256 hex digest", details={"file_hash": file_hash})

    file_size = data.get("file_size")
    if file_size is None and content is not None:
        file_size = len(content)
    if isinstance(file_size, bool) or not isinstance(file_size, int) or file_size < 0:
        raise ValidationError("file_size must be a non-negative integer", details={"file_size": file_size})

    return {
        "file_name": file_name[:300],
        "file_path": file_path[:500],
        "file_hash": file_hash,
        "file_size": file_size,
        "mime_type": data.get("mime_type") or "application/octet-stream",
    }


def _next_version_number(document_id: str) -> int:
    current = db.session.scalar(
        db.select(func.max(DocumentVersion.version_number))
        .where(DocumentVersion.document_id == document_id)
    )
    return (current or 0) + 1


def _append_version(document: Document, fields: dict, *, change_note: str,
                    actor_user_id: str | None, reverted_from: int | None = None) -> DocumentVersion:
    version = DocumentVersion(
        tenant_id=document.tenant_id,
        document_id=document.id,
        version_number=_next_version_number(document.id),
        change_note=change_note or "",
        reverted_from_version=reverted_from,
        uploaded_by=actor_user_id,
        **fields,
    )
    db.session.add(version)
    db.session.flush()
    document.current_version_id = version.id
    return version


def _commit_version(document_id: str, tenant_id: str, build):
    """Run *build(document)* and commit, retrying once on a version-number race."""
    for attempt in (1, 2):
        document = get_document(document_id, tenant_id=tenant_id)
        try:
            version = build(document)
            db.session.commit()
            return version
        except IntegrityError as exc:
            db.session.rollback()
            if attempt == 2:
                raise ConflictError("DocumentVersion", "version_number", document_id) from exc
            logger.info("Version number race on document %s, retrying", document_id)


# ═══════════════════════════════════════════════════════════════
# Documents
# ═══════════════════════════════════════════════════════════════

def create_document(project_id: str, *, tenant_id: str, data: dict,
                    actor_user_id: str | None = None) -> Document:
    """Create a document together with its first version."""
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    require_editable(project)

    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    category = data.get("category") or "general"
    if category not in DOCUMENT_CATEGORIES:
        raise ValidationError(f"Invalid category '{category}'",
                              details={"category": sorted(DOCUMENT_CATEGORIES)})
    fields = _file_fields(data)

    document = Document(
        tenant_id=tenant_id,
        project_id=project.id,
        title=title,
        description=data.get("description") or "",
        category=category,
        status="draft",
        created_by=actor_user_id,
    )
    db.session.add(document)
    db.session.flush()
    version = _append_version(document, fields, change_note=data.get("change_note") or "Initial upload",
                              actor_user_id=actor_user_id)

    write_audit(entity_type="document", entity_id=document.id, action="create",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"title": title, "version": version.version_number})
    enqueue_event(tenant_id=tenant_id, event_type="document.version_uploaded",
                  aggregate_type="document", aggregate_id=document.id,
                  payload={"project_id": project.id, "title": title,
                           "version_number": version.version_number})
    db.session.commit()
    return document


def get_document(document_id: str, *, tenant_id: str, include_deleted: bool = False) -> Document:
    return get_scoped(Document, document_id, tenant_id=tenant_id, include_deleted=include_deleted)


def list_documents(project_id: str, *, tenant_id: str, category: str | None = None,
                   include_deleted: bool = False):
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    q = Document.query_visible(include_deleted).filter(Document.project_id == project.id)
    if category:
        q = q.filter(Document.category == category)
    return q.order_by(Document.created_at.desc(), Document.id.desc())


def update_document(document_id: str, *, tenant_id: str, data: dict,
                    actor_user_id: str | None = None) -> Document:
    """Edit metadata only; file content changes go through :func:`upload_version`."""
    document = get_document(document_id, tenant_id=tenant_id)
    diff = {}
    for field in ("title", "description", "category", "status"):
        if field not in data:
            continue
        value = data[field]
        if field == "title":
            value = str(value or "").strip()
            if not value:
                raise ValidationError("title cannot be empty", details={"title": "required"})
        elif field == "category" and value not in DOCUMENT_CATEGORIES:
            raise ValidationError(f"Invalid category '{value}'", details={"category": sorted(DOCUMENT_CATEGORIES)})
        elif field == "status" and value not in DOCUMENT_STATUSES:
            raise ValidationError(f"Invalid status '{value}'", details={"status": sorted(DOCUMENT_STATUSES)})
        if getattr(document, field) != value:
            diff[field] = {"old": getattr(document, field), "new": value}
            setattr(document, field, value)
    if diff:
        write_audit(entity_type="document", entity_id=document.id, action="update",
                    tenant_id=tenant_id, project_id=document.project_id,
                    actor_user_id=actor_user_id, diff=diff)
    db.session.commit()
    return document


def soft_delete_document(document_id: str, *, tenant_id: str,
                         actor_user_id: str | None = None) -> Document:
    """Tombstone the document.  Versions stay untouched."""
    document = get_document(document_id, tenant_id=tenant_id)
    document.soft_delete()
    write_audit(entity_type="document", entity_id=document.id, action="delete",
                tenant_id=tenant_id, project_id=document.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return document


# ═══════════════════════════════════════════════════════════════
# Versions
# ═══════════════════════════════════════════════════════════════

def upload_version(document_id: str, *, tenant_id: str, data: dict,
                   actor_user_id: str | None = None) -> DocumentVersion:
    """Append version n+1 and make it current."""
    fields = _file_fields(data)
    change_note = data.get("change_note") or ""

    def build(document):
        require_editable(document.project)
        version = _append_version(document, fields, change_note=change_note,
                                  actor_user_id=actor_user_id)
        write_audit(entity_type="document", entity_id=document.id, action="document.version_uploaded",
                    tenant_id=tenant_id, project_id=document.project_id, actor_user_id=actor_user_id,
                    diff={"version": version.version_number, "file_hash": version.file_hash})
        enqueue_event(tenant_id=tenant_id, event_type="document.version_uploaded",
                      aggregate_type="document", aggregate_id=document.id,
                      payload={"project_id": document.project_id, "title": document.title,
                               "version_number": version.version_number})
        return version

    return _commit_version(document_id, tenant_id, build)


def get_version(document_id: str, version_number: int, *, tenant_id: str) -> DocumentVersion:
    document = get_document(document_id, tenant_id=tenant_id, include_deleted=True)
    version = document.versions.filter(DocumentVersion.version_number == version_number).first()
    if version is None:
        raise NotFoundError(resource="DocumentVersion", resource_id=f"{document_id}@v{version_number}")
    return version


def revert_to_version(document_id: str, version_number: int, *, tenant_id: str,
                      change_note: str = "", actor_user_id: str | None = None) -> DocumentVersion:
    """Append a copy of *version_number* as the new current version."""
    source = get_version(document_id, version_number, tenant_id=tenant_id)
    snapshot = source.snapshot()

    def build(document):
        require_editable(document.project)
        current = document.current_version
        if current is not None and current.version_number == version_number:
            raise ValidationError(f"Version {version_number} is already current",
                                  details={"version_number": version_number})
        version = _append_version(document, snapshot,
                                  change_note=change_note or f"Reverted to version {version_number}",
                                  actor_user_id=actor_user_id, reverted_from=version_number)
        write_audit(entity_type="document", entity_id=document.id, action="document.reverted",
                    tenant_id=tenant_id, project_id=document.project_id, actor_user_id=actor_user_id,
                    diff={"version": version.version_number, "reverted_from": version_number})
        enqueue_event(tenant_id=tenant_id, event_type="document.reverted",
                      aggregate_type="document", aggregate_id=document.id,
                      payload={"project_id": document.project_id, "title": document.title,
                               "version_number": version.version_number,
                               "reverted_from": version_number})
        return version

    return _commit_version(document_id, tenant_id, build)


def list_versions(document_id: str, *, tenant_id: str) -> list[DocumentVersion]:
    document = get_document(document_id, tenant_id=tenant_id, include_deleted=True)
    return document.versions.all()


def get_current_version(document_id: str, *, tenant_id: str) -> DocumentVersion | None:
    return get_document(document_id, tenant_id=tenant_id).current_version


def compare_versions(document_id: str, from_version: int, to_version: int, *, tenant_id: str) -> dict:
    """Field-level differences between two versions of the same document."""
    a = get_version(document_id, from_version, tenant_id=tenant_id)
    b = get_version(document_id, to_version, tenant_id=tenant_id)
    changes = {
        field: {"from": getattr(a, field), "to": getattr(b, field)}
        for field in COMPARED_FIELDS
        if getattr(a, field) != getattr(b, field)
    }
    return {
        "document_id": document_id,
        "from_version": from_version,
        "to_version": to_version,
        "same_content": a.file_hash == b.file_hash,
        "changes": changes,
    }

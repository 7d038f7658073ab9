"""
Project Workspace Platform
Document versioning models.

Models:
    - Document: mutable metadata + head pointer (current_version_id)
    - DocumentVersion: immutable snapshot; version_number unique per document

Version rows are append-only: the ORM refuses UPDATE and DELETE on
``DocumentVersion`` (see the ``before_update`` / ``before_delete`` listeners).  Reverting to an old
version appends a copy that records ``reverted_from_version``.
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso

# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_CATEGORIES = {"general", "contract", "drawing", "specification", "report", "photo", "invoice"}
DOCUMENT_STATUSES = {"draft", "in_review", "approved", "archived"}


class ImmutableRowError(RuntimeError):
    """Raised when code tries to modify an append-only row."""


# ═════════════════════════════════════════════════════════════════════════════
# 1. Document
# ═════════════════════════════════════════════════════════════════════════════


class Document(SoftDeleteMixin, TenantModel):
    __tablename__ = "documents"
    __table_args__ = (
        db.Index("ix_documents_project_category", "project_id", "category"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, default="general")
    status = db.Column(db.String(20), nullable=False, default="draft")
    # Head pointer; use_alter breaks the documents <-> document_versions FK cycle
    current_version_id = db.Column(
        db.String(26),
        db.ForeignKey(
            "document_versions.id", ondelete="SET NULL",
            use_alter=True, name="fk_documents_current_version",
        ),
        nullable=True,
    )
    created_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project")
    versions = db.relationship(
        "DocumentVersion",
        foreign_keys="DocumentVersion.document_id",
        back_populates="document",
        lazy="dynamic",
        order_by="DocumentVersion.version_number",
        passive_deletes="all",
    )
    current_version = db.relationship(
        "DocumentVersion", foreign_keys=[current_version_id], post_update=True,
    )

    def to_dict(self, include_current=True):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "status": self.status,
            "current_version_id": self.current_version_id,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_current:
            cv = self.current_version
            d["current_version"] = cv.to_dict() if cv else None
        return d


# ═════════════════════════════════════════════════════════════════════════════
# 2. DocumentVersion (immutable)
# ═════════════════════════════════════════════════════════════════════════════


class DocumentVersion(TenantModel):
    __tablename__ = "document_versions"
    __table_args__ = (
        db.UniqueConstraint("document_id", "version_number", name="uq_document_version"),
        db.CheckConstraint("version_number >= 1", name="ck_document_version_positive"),
    )

    document_id = ulid_fk("documents.id", ondelete="CASCADE")
    version_number = db.Column(db.Integer, nullable=False)
    file_name = db.Column(db.String(300), nullable=False)
    file_path = db.Column(db.String(500), nullable=False)
    file_hash = db.Column(db.String(64), nullable=False, comment="SHA-256 hex digest")
    file_size = db.Column(db.BigInteger, nullable=False, default=0)
    mime_type = db.Column(db.String(100), default="application/octet-stream")
    change_note = db.Column(db.Text, default="")
    reverted_from_version = db.Column(
        db.Integer, nullable=True,
        comment="version_number this row was copied from by a revert",
    )
    uploaded_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    document = db.relationship("Document", foreign_keys=[document_id], back_populates="versions")

    def snapshot(self) -> dict:
        """Content fields copied by a revert."""
        return {
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_hash": self.file_hash,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "document_id": self.document_id,
            "version_number": self.version_number,
            "file_name": self.file_name,
            "file_path": self.file_path,
            "file_hash": self.file_hash,
            "file_size": self.file_size,
            "mime_type": self.mime_type,
            "change_note": self.change_note,
            "reverted_from_version": self.reverted_from_version,
            "uploaded_by": self.uploaded_by,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<DocumentVersion {self.document_id} v{self.version_number}>"


@_sa_event.listens_for(DocumentVersion, "before_update")
def _block_version_update(mapper, connection, target):
    raise ImmutableRowError(
        f"DocumentVersion {target.id} is immutable; upload a new version instead"
    )


@_sa_event.listens_for(DocumentVersion, "before_delete")
def _block_version_delete(mapper, connection, target):
    raise ImmutableRowError(f"DocumentVersion {target.id} cannot be deleted")

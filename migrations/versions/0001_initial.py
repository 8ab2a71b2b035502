"""initial surplus exchange schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


class GUID(sa.TypeDecorator):
    impl = sa.CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            from sqlalchemy.dialects.postgresql import UUID

            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(sa.CHAR(36))


class ExactDecimal(sa.TypeDecorator):
    impl = sa.String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(sa.Numeric(18, 6, asdecimal=True))
        return dialect.type_descriptor(sa.String(40))


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=50), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_organizations_name", "organizations", ["name"])
    op.create_index("ix_organizations_category", "organizations", ["category"])
    op.create_index("ix_organizations_category_active", "organizations", ["category", "is_active"])

    op.create_table(
        "users",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("organization_id", GUID(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("hashed_password", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("organization_id", "email", name="uq_users_organization_email"),
    )
    op.create_index("ix_users_organization_id", "users", ["organization_id"])
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "attachments",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("organization_id", GUID(), nullable=False),
        sa.Column("original_name", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("size", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("uploaded_by", GUID(), nullable=False),
        sa.Column("uploaded_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_attachments_organization_id", "attachments", ["organization_id"])

    op.create_table(
        "materials",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("organization_id", GUID(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("unit", sa.String(length=50), nullable=False),
        sa.Column("condition", sa.String(length=50), nullable=False),
        sa.Column("listed_quantity", ExactDecimal(), nullable=False),
        sa.Column("quantity", ExactDecimal(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("is_surplus", sa.Boolean(), nullable=False),
        sa.Column("available_from", sa.DateTime(), nullable=True),
        sa.Column("available_until", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("estimated_cost", ExactDecimal(), nullable=True),
        sa.Column("attachment_ids", sa.JSON(), nullable=True),
        sa.Column("source_transfer_id", GUID(), nullable=True),
        sa.Column("created_by", GUID(), nullable=False),
        sa.Column("updated_by", GUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_materials_organization_id", "materials", ["organization_id"])
    op.create_index("ix_materials_org_status", "materials", ["organization_id", "status"])
    op.create_index("ix_materials_org_surplus", "materials", ["organization_id", "is_surplus"])
    op.create_index("ix_materials_surplus_status", "materials", ["is_surplus", "status"])

    op.create_table(
        "material_allocations",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("material_id", GUID(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("transfer_request_id", GUID(), nullable=False),
        sa.Column("entry_type", sa.String(length=20), nullable=False),
        sa.Column("quantity_allocated", ExactDecimal(), nullable=False),
        sa.Column("allocated_by", GUID(), nullable=False),
        sa.Column("allocated_at", sa.DateTime(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_material_allocations_material_id", "material_allocations", ["material_id"])
    op.create_index(
        "ix_material_allocations_transfer_request_id", "material_allocations", ["transfer_request_id"]
    )

    op.create_table(
        "transfer_requests",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("material_id", GUID(), sa.ForeignKey("materials.id"), nullable=False),
        sa.Column("from_organization_id", GUID(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("to_organization_id", GUID(), sa.ForeignKey("organizations.id"), nullable=False),
        sa.Column("quantity_requested", ExactDecimal(), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("requested_by", GUID(), nullable=False),
        sa.Column("approved_by", GUID(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejected_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
    )
    op.create_index("ix_transfer_requests_material_id", "transfer_requests", ["material_id"])
    op.create_index("ix_transfer_requests_from_organization_id", "transfer_requests", ["from_organization_id"])
    op.create_index("ix_transfer_requests_to_organization_id", "transfer_requests", ["to_organization_id"])
    op.create_index("ix_transfer_requests_status", "transfer_requests", ["status"])
    op.create_index("ix_transfer_requests_requested_by", "transfer_requests", ["requested_by"])
    op.create_index("ix_transfer_requests_from_status", "transfer_requests", ["from_organization_id", "status"])
    op.create_index("ix_transfer_requests_to_status", "transfer_requests", ["to_organization_id", "status"])

    op.create_table(
        "transfer_comments",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("transfer_request_id", GUID(), sa.ForeignKey("transfer_requests.id"), nullable=False),
        sa.Column("comment_type", sa.String(length=20), nullable=False),
        sa.Column("comment", sa.Text(), nullable=False),
        sa.Column("created_by", GUID(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_transfer_comments_transfer_request_id", "transfer_comments", ["transfer_request_id"])

    op.create_table(
        "audit_log_entries",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("organization_id", GUID(), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("changed_by", GUID(), nullable=False),
        sa.Column("changed_at", sa.DateTime(), nullable=False),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("trace_id", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("entity_id", "action", "changed_at", name="uq_audit_entity_action_changed_at"),
    )
    op.create_index("ix_audit_log_entries_organization_id", "audit_log_entries", ["organization_id"])
    op.create_index("ix_audit_org_entity", "audit_log_entries", ["organization_id", "entity"])
    op.create_index("ix_audit_org_entity_id", "audit_log_entries", ["organization_id", "entity_id"])
    op.create_index("ix_audit_org_changed_by", "audit_log_entries", ["organization_id", "changed_by"])
    op.create_index("ix_audit_org_changed_at", "audit_log_entries", ["organization_id", "changed_at"])

    op.create_table(
        "notifications",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("user_id", GUID(), nullable=False),
        sa.Column("organization_id", GUID(), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.String(length=20), nullable=False),
        sa.Column("read", sa.Boolean(), nullable=False),
        sa.Column("related_entity_type", sa.String(length=50), nullable=True),
        sa.Column("related_entity_id", GUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_organization_id", "notifications", ["organization_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", GUID(), primary_key=True),
        sa.Column("organization_id", GUID(), nullable=False),
        sa.Column("endpoint", sa.String(length=255), nullable=False),
        sa.Column("method", sa.String(length=16), nullable=False),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("request_hash", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "organization_id", "endpoint", "method", "idempotency_key", name="uq_idempotency"
        ),
    )
    op.create_index("ix_idempotency_records_organization_id", "idempotency_records", ["organization_id"])


def downgrade() -> None:
    op.drop_table("idempotency_records")
    op.drop_table("notifications")
    op.drop_table("audit_log_entries")
    op.drop_table("transfer_comments")
    op.drop_table("transfer_requests")
    op.drop_table("material_allocations")
    op.drop_table("materials")
    op.drop_table("attachments")
    op.drop_table("users")
    op.drop_table("organizations")

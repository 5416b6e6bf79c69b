"""compliance engine schema

Revision ID: a7c1e9d20b31
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa

revision = "a7c1e9d20b31"
down_revision = None
branch_labels = None
depends_on = None

DOMAINS = ("CORPORATE", "TAX_GST", "TAX_INCOME", "LABOUR", "FEMA", "LICENSES")
PRIORITIES = ("critical", "urgent", "high", "medium", "low")
OBLIGATION_STATUSES = ("pending", "in_progress", "completed", "overdue", "cancelled")
COMPLIANCE_STATES = ("GREEN", "AMBER", "RED")
STEP_TYPES = ("ops_task", "client_task", "qa_review", "automated")
STEP_STATUSES = ("blocked", "ready", "assigned", "in_progress", "done", "skipped")
CHANNELS = ("email", "sms", "whatsapp", "in_app", "push")


def upgrade() -> None:
    # Entities and obligations
    op.create_table(
        "entities",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("entity_type", sa.String(length=40), nullable=False),
        sa.Column("registration_number", sa.String(length=80), nullable=True),
        sa.Column("registration_metadata", sa.JSON(), nullable=True),
        sa.Column(
            "lifecycle_stage",
            sa.Enum("onboarding", "active", "dormant", "winding_up", name="lifecyclestage"),
            nullable=True,
        ),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("primary_contact_email", sa.String(length=255), nullable=True),
        sa.Column("primary_contact_phone", sa.String(length=40), nullable=True),
        sa.Column("onboarded_on", sa.Date(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_entities_entity_type", "entities", ["entity_type"])

    op.create_table(
        "obligation_definitions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("code", sa.String(length=80), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("domain", sa.Enum(*DOMAINS, name="domain"), nullable=False),
        sa.Column(
            "periodicity",
            sa.Enum(
                "one_time", "monthly", "quarterly", "half_yearly", "annual",
                name="periodicity",
            ),
            nullable=False,
        ),
        sa.Column("base_sla_days", sa.Integer(), nullable=False),
        sa.Column("due_offset_days", sa.Integer(), nullable=False),
        sa.Column("penalty_formula", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Enum(*PRIORITIES, name="prioritylevel"), nullable=False),
        sa.Column("risk_window_days", sa.Integer(), nullable=True),
        sa.Column("applicable_entity_types", sa.JSON(), nullable=False),
        sa.Column("effective_from", sa.Date(), nullable=True),
        sa.Column("effective_until", sa.Date(), nullable=True),
        sa.Column("supersedes_id", sa.UUID(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["supersedes_id"], ["obligation_definitions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", "version", name="uq_obligation_definitions_code_version"),
    )
    op.create_index(
        "ix_obligation_definitions_domain", "obligation_definitions", ["domain"]
    )

    op.create_table(
        "obligation_instances",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("definition_id", sa.UUID(), nullable=False),
        sa.Column("obligation_code", sa.String(length=80), nullable=False),
        sa.Column("period_key", sa.String(length=40), nullable=False),
        sa.Column("period_label", sa.String(length=40), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        sa.Column(
            "status", sa.Enum(*OBLIGATION_STATUSES, name="obligationstatus"), nullable=False
        ),
        sa.Column("workflow_run_id", sa.UUID(), nullable=True),
        sa.Column("penalty_accrued", sa.Numeric(14, 2), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_id",
            "obligation_code",
            "period_key",
            name="uq_obligation_instances_entity_code_period",
        ),
    )
    op.create_index("ix_obligation_instances_entity_id", "obligation_instances", ["entity_id"])
    op.create_index("ix_obligation_instances_status", "obligation_instances", ["status"])
    op.create_index("ix_obligation_instances_due_date", "obligation_instances", ["due_date"])

    op.create_table(
        "obligation_status_transitions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column(
            "from_status",
            sa.Enum(*OBLIGATION_STATUSES, name="obligationstatus", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "to_status",
            sa.Enum(*OBLIGATION_STATUSES, name="obligationstatus", create_type=False),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=80), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_obligation_status_transitions_instance_id",
        "obligation_status_transitions",
        ["instance_id"],
    )

    op.create_table(
        "obligation_documents",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("document_type", sa.String(length=80), nullable=False),
        sa.Column("external_document_id", sa.String(length=120), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "instance_id",
            "external_document_id",
            name="uq_obligation_documents_instance_external",
        ),
    )
    op.create_index(
        "ix_obligation_documents_instance_id", "obligation_documents", ["instance_id"]
    )

    op.create_table(
        "reminder_logs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("instance_id", sa.UUID(), nullable=False),
        sa.Column("offset_days", sa.Integer(), nullable=False),
        sa.Column("reminder_date", sa.Date(), nullable=False),
        sa.Column("event_id", sa.UUID(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["instance_id"], ["obligation_instances.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "instance_id", "offset_days", name="uq_reminder_logs_instance_offset"
        ),
    )

    # Computed state
    op.create_table(
        "compliance_state_snapshots",
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column(
            "overall_state", sa.Enum(*COMPLIANCE_STATES, name="compliancestate"), nullable=False
        ),
        sa.Column("risk_score", sa.Integer(), nullable=False),
        sa.Column("penalty_exposure", sa.Numeric(14, 2), nullable=False),
        sa.Column("state_json", sa.JSON(), nullable=False),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("entity_id"),
    )

    op.create_table(
        "compliance_state_history",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column(
            "previous_state",
            sa.Enum(*COMPLIANCE_STATES, name="compliancestate", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "overall_state",
            sa.Enum(*COMPLIANCE_STATES, name="compliancestate", create_type=False),
            nullable=False,
        ),
        sa.Column("risk_score", sa.Integer(), nullable=False),
        sa.Column("penalty_exposure", sa.Numeric(14, 2), nullable=False),
        sa.Column("snapshot", sa.JSON(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_compliance_state_history_entity_id", "compliance_state_history", ["entity_id"]
    )

    # Workflows
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("graph", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key", "version", name="uq_workflow_templates_key_version"),
    )

    op.create_table(
        "workflow_step_definitions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("template_id", sa.UUID(), nullable=False),
        sa.Column("key", sa.String(length=80), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("step_type", sa.Enum(*STEP_TYPES, name="steptype"), nullable=False),
        sa.Column("depends_on", sa.JSON(), nullable=False),
        sa.Column("sla_days", sa.Integer(), nullable=False),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITIES, name="prioritylevel", create_type=False),
            nullable=False,
        ),
        sa.Column("required_documents", sa.JSON(), nullable=False),
        sa.Column("queue_name", sa.String(length=40), nullable=True),
        sa.Column("precondition", sa.String(length=80), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("template_id", "key", name="uq_workflow_step_definitions_key"),
    )

    op.create_table(
        "workflow_runs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("template_id", sa.UUID(), nullable=False),
        sa.Column("obligation_instance_id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "completed", "cancelled", name="workflowrunstatus"),
            nullable=False,
        ),
        sa.Column("started_by", sa.String(length=80), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["template_id"], ["workflow_templates.id"]),
        sa.ForeignKeyConstraint(["obligation_instance_id"], ["obligation_instances.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_runs_obligation_instance_id", "workflow_runs", ["obligation_instance_id"]
    )
    op.create_index("ix_workflow_runs_entity_id", "workflow_runs", ["entity_id"])

    op.create_table(
        "workflow_step_runs",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("run_id", sa.UUID(), nullable=False),
        sa.Column("step_key", sa.String(length=80), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column(
            "step_type",
            sa.Enum(*STEP_TYPES, name="steptype", create_type=False),
            nullable=False,
        ),
        sa.Column("status", sa.Enum(*STEP_STATUSES, name="stepstatus"), nullable=False),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITIES, name="prioritylevel", create_type=False),
            nullable=False,
        ),
        sa.Column("sla_days", sa.Integer(), nullable=False),
        sa.Column("queue_name", sa.String(length=40), nullable=True),
        sa.Column("required_documents", sa.JSON(), nullable=False),
        sa.Column("precondition", sa.String(length=80), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("assignee_id", sa.String(length=80), nullable=True),
        sa.Column("ready_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sla_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(length=80), nullable=True),
        sa.Column("stall_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reopened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["workflow_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "step_key", name="uq_workflow_step_runs_run_key"),
    )
    op.create_index("ix_workflow_step_runs_status", "workflow_step_runs", ["status"])
    op.create_index("ix_workflow_step_runs_assignee_id", "workflow_step_runs", ["assignee_id"])

    op.create_table(
        "workflow_step_transitions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("run_id", sa.UUID(), nullable=False),
        sa.Column("step_run_id", sa.UUID(), nullable=False),
        sa.Column(
            "from_status",
            sa.Enum(*STEP_STATUSES, name="stepstatus", create_type=False),
            nullable=True,
        ),
        sa.Column(
            "to_status",
            sa.Enum(*STEP_STATUSES, name="stepstatus", create_type=False),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=80), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["workflow_runs.id"]),
        sa.ForeignKeyConstraint(["step_run_id"], ["workflow_step_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_step_transitions_run_id", "workflow_step_transitions", ["run_id"]
    )

    # Work queues
    op.create_table(
        "queue_members",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("queue_name", sa.String(length=40), nullable=False),
        sa.Column("actor_id", sa.String(length=80), nullable=False),
        sa.Column("max_load", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("queue_name", "actor_id", name="uq_queue_members_queue_actor"),
    )

    op.create_table(
        "queue_items",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("queue_name", sa.String(length=40), nullable=False),
        sa.Column("step_run_id", sa.UUID(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=True),
        sa.Column(
            "priority",
            sa.Enum(*PRIORITIES, name="prioritylevel", create_type=False),
            nullable=False,
        ),
        sa.Column("sla_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "waiting", "assigned", "in_progress", "done", "cancelled",
                name="queueitemstatus",
            ),
            nullable=False,
        ),
        sa.Column("assignee_id", sa.String(length=80), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["step_run_id"], ["workflow_step_runs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_items_queue_status", "queue_items", ["queue_name", "status"])
    op.create_index("ix_queue_items_assignee_id", "queue_items", ["assignee_id"])

    # Notifications
    op.create_table(
        "alert_preferences",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("contact_id", sa.String(length=80), nullable=True),
        sa.Column("preferences", sa.JSON(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("updated_by", sa.String(length=80), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_id", "contact_id", name="uq_alert_preferences_entity_contact"
        ),
    )

    op.create_table(
        "notification_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column(
            "severity",
            sa.Enum("critical", "warning", "info", name="severity"),
            nullable=False,
        ),
        sa.Column(
            "domain",
            sa.Enum(*DOMAINS, name="domain", create_type=False),
            nullable=True,
        ),
        sa.Column("obligation_instance_id", sa.UUID(), nullable=True),
        sa.Column("workflow_run_id", sa.UUID(), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("is_escalation", sa.Boolean(), nullable=False),
        sa.Column("parent_event_id", sa.UUID(), nullable=True),
        sa.Column("dedup_key", sa.String(length=160), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.ForeignKeyConstraint(["parent_event_id"], ["notification_events.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("dedup_key", name="uq_notification_events_dedup_key"),
    )
    op.create_index("ix_notification_events_entity_id", "notification_events", ["entity_id"])
    op.create_index("ix_notification_events_created_at", "notification_events", ["created_at"])

    op.create_table(
        "notification_acknowledgements",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("event_id", sa.UUID(), nullable=False),
        sa.Column("actor_id", sa.String(length=80), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["notification_events.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", name="uq_notification_acknowledgements_event"),
    )

    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("event_id", sa.UUID(), nullable=False),
        sa.Column("entity_id", sa.UUID(), nullable=False),
        sa.Column("channel", sa.Enum(*CHANNELS, name="channel"), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "sent", "batched", "deferred", "suppressed", "failed",
                name="deliverystatus",
            ),
            nullable=False,
        ),
        sa.Column("reason", sa.String(length=80), nullable=True),
        sa.Column("recipients", sa.JSON(), nullable=False),
        sa.Column("template", sa.String(length=80), nullable=True),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("digest_key", sa.String(length=40), nullable=True),
        sa.Column("is_escalation", sa.Boolean(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["event_id"], ["notification_events.id"]),
        sa.ForeignKeyConstraint(["entity_id"], ["entities.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notification_deliveries_event_id", "notification_deliveries", ["event_id"]
    )
    op.create_index(
        "ix_notification_deliveries_status", "notification_deliveries", ["status"]
    )


def downgrade() -> None:
    op.drop_index("ix_notification_deliveries_status", table_name="notification_deliveries")
    op.drop_index("ix_notification_deliveries_event_id", table_name="notification_deliveries")
    op.drop_table("notification_deliveries")
    op.drop_table("notification_acknowledgements")
    op.drop_index("ix_notification_events_created_at", table_name="notification_events")
    op.drop_index("ix_notification_events_entity_id", table_name="notification_events")
    op.drop_table("notification_events")
    op.drop_table("alert_preferences")
    op.drop_index("ix_queue_items_assignee_id", table_name="queue_items")
    op.drop_index("ix_queue_items_queue_status", table_name="queue_items")
    op.drop_table("queue_items")
    op.drop_table("queue_members")
    op.drop_index("ix_workflow_step_transitions_run_id", table_name="workflow_step_transitions")
    op.drop_table("workflow_step_transitions")
    op.drop_index("ix_workflow_step_runs_assignee_id", table_name="workflow_step_runs")
    op.drop_index("ix_workflow_step_runs_status", table_name="workflow_step_runs")
    op.drop_table("workflow_step_runs")
    op.drop_index("ix_workflow_runs_entity_id", table_name="workflow_runs")
    op.drop_index("ix_workflow_runs_obligation_instance_id", table_name="workflow_runs")
    op.drop_table("workflow_runs")
    op.drop_table("workflow_step_definitions")
    op.drop_table("workflow_templates")
    op.drop_index("ix_compliance_state_history_entity_id", table_name="compliance_state_history")
    op.drop_table("compliance_state_history")
    op.drop_table("compliance_state_snapshots")
    op.drop_table("reminder_logs")
    op.drop_index("ix_obligation_documents_instance_id", table_name="obligation_documents")
    op.drop_table("obligation_documents")
    op.drop_index(
        "ix_obligation_status_transitions_instance_id",
        table_name="obligation_status_transitions",
    )
    op.drop_table("obligation_status_transitions")
    op.drop_index("ix_obligation_instances_due_date", table_name="obligation_instances")
    op.drop_index("ix_obligation_instances_status", table_name="obligation_instances")
    op.drop_index("ix_obligation_instances_entity_id", table_name="obligation_instances")
    op.drop_table("obligation_instances")
    op.drop_index("ix_obligation_definitions_domain", table_name="obligation_definitions")
    op.drop_table("obligation_definitions")
    op.drop_index("ix_entities_entity_type", table_name="entities")
    op.drop_table("entities")
    for name in (
        "deliverystatus",
        "channel",
        "severity",
        "queueitemstatus",
        "stepstatus",
        "workflowrunstatus",
        "steptype",
        "compliancestate",
        "obligationstatus",
        "prioritylevel",
        "periodicity",
        "domain",
        "lifecyclestage",
    ):
        sa.Enum(name=name).drop(op.get_bind(), checkfirst=True)

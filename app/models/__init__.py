from app.models.compliance import (  # noqa: F401
    DOMAIN_PRIORITY,
    ComplianceState,
    ComplianceStateHistory,
    ComplianceStateSnapshot,
    Domain,
    Entity,
    LifecycleStage,
    ObligationDefinition,
    ObligationDocument,
    ObligationInstance,
    ObligationStatus,
    ObligationStatusTransition,
    Periodicity,
    PriorityLevel,
    ReminderLog,
)
from app.models.notification import (  # noqa: F401
    AlertPreference,
    Channel,
    DeliveryStatus,
    NotificationAcknowledgement,
    NotificationDelivery,
    NotificationEvent,
    Severity,
)
from app.models.workflow import (  # noqa: F401
    QueueItem,
    QueueItemStatus,
    QueueMember,
    StepStatus,
    StepType,
    WorkflowRun,
    WorkflowRunStatus,
    WorkflowStepDefinition,
    WorkflowStepRun,
    WorkflowStepTransition,
    WorkflowTemplate,
)

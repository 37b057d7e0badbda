from app.schemas.account_state import (
    AccountStateResponse,
    AccountStateUpdate,
    FeatureAccessResponse,
    FeatureRestrictionsResponse,
)
from app.schemas.audit_log import AuditLogFilter, AuditLogResponse
from app.schemas.dunning_campaign import (
    CommunicationEvent,
    DunningCampaignCreate,
    DunningCampaignFilter,
    DunningCampaignResponse,
    DunningCampaignUpdate,
    DunningCommunicationResponse,
)
from app.schemas.job_execution import (
    JobExecutionResponse,
    JobTriggerRequest,
    JobTriggerResponse,
    SystemHealthResponse,
)
from app.schemas.payment_failure import (
    FailureActionRequest,
    PaymentFailedEvent,
    PaymentFailureFilter,
    PaymentFailureResponse,
    PaymentSucceededEvent,
    RecordFailureResult,
    RetryPaymentBody,
    RetryPaymentRequest,
    RetryPaymentResult,
    SweepResult,
)
from app.schemas.payment_method_health import PaymentMethodHealthResponse
from app.schemas.recovery_analytics import (
    GenerateMetricsRequest,
    RecoveryAnalyticsFilter,
    RecoveryAnalyticsResponse,
    RecoverySummary,
)

__all__ = [
    "AccountStateResponse",
    "AccountStateUpdate",
    "AuditLogFilter",
    "AuditLogResponse",
    "CommunicationEvent",
    "DunningCampaignCreate",
    "DunningCampaignFilter",
    "DunningCampaignResponse",
    "DunningCampaignUpdate",
    "DunningCommunicationResponse",
    "FailureActionRequest",
    "FeatureAccessResponse",
    "FeatureRestrictionsResponse",
    "GenerateMetricsRequest",
    "JobExecutionResponse",
    "JobTriggerRequest",
    "JobTriggerResponse",
    "PaymentFailedEvent",
    "PaymentFailureFilter",
    "PaymentFailureResponse",
    "PaymentMethodHealthResponse",
    "PaymentSucceededEvent",
    "RecordFailureResult",
    "RecoveryAnalyticsFilter",
    "RecoveryAnalyticsResponse",
    "RecoverySummary",
    "RetryPaymentBody",
    "RetryPaymentRequest",
    "RetryPaymentResult",
    "SweepResult",
    "SystemHealthResponse",
]

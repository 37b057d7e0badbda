from app.models.account_state import AccountState, AccountStateType
from app.models.audit_log import AuditLog
from app.models.customer import Customer
from app.models.dunning_campaign import (
    CompletionReason,
    DunningCampaign,
    DunningCampaignStatus,
    StepStatus,
)
from app.models.dunning_communication import CommunicationStatus, DunningCommunication
from app.models.job_execution import JobExecution, JobType
from app.models.payment_failure import PaymentFailure, PaymentFailureStatus, ResolutionType
from app.models.payment_method_health import HealthRecommendation, PaymentMethodHealth
from app.models.processed_event import ProcessedEvent
from app.models.recovery_analytics import RecoveryAnalyticsRecord

__all__ = [
    "AccountState",
    "AccountStateType",
    "AuditLog",
    "CommunicationStatus",
    "CompletionReason",
    "Customer",
    "DunningCampaign",
    "DunningCampaignStatus",
    "DunningCommunication",
    "HealthRecommendation",
    "JobExecution",
    "JobType",
    "PaymentFailure",
    "PaymentFailureStatus",
    "PaymentMethodHealth",
    "ProcessedEvent",
    "RecoveryAnalyticsRecord",
    "ResolutionType",
    "StepStatus",
]

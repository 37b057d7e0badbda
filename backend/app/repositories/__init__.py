from app.repositories.account_state_repository import AccountStateRepository
from app.repositories.audit_log_repository import AuditLogRepository
from app.repositories.customer_repository import CustomerRepository
from app.repositories.dunning_campaign_repository import DunningCampaignRepository
from app.repositories.dunning_communication_repository import DunningCommunicationRepository
from app.repositories.job_execution_repository import JobExecutionRepository
from app.repositories.payment_failure_repository import PaymentFailureRepository
from app.repositories.payment_method_health_repository import PaymentMethodHealthRepository
from app.repositories.processed_event_repository import ProcessedEventRepository
from app.repositories.recovery_analytics_repository import RecoveryAnalyticsRepository

__all__ = [
    "AccountStateRepository",
    "AuditLogRepository",
    "CustomerRepository",
    "DunningCampaignRepository",
    "DunningCommunicationRepository",
    "JobExecutionRepository",
    "PaymentFailureRepository",
    "PaymentMethodHealthRepository",
    "ProcessedEventRepository",
    "RecoveryAnalyticsRepository",
]

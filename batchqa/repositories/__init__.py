from batchqa.repositories.audit_logs import InMemoryAuditLogsRepository, PostgresAuditLogsRepository
from batchqa.repositories.batches import InMemoryBatchesRepository, PostgresBatchesRepository
from batchqa.repositories.notifications import InMemoryNotificationsRepository, PostgresNotificationsRepository
from batchqa.repositories.parameter_values import (
    InMemoryParameterValuesRepository,
    PostgresParameterValuesRepository,
)
from batchqa.repositories.reference_data import (
    REFERENCE_KINDS,
    InMemoryReferenceDataRepository,
    PostgresReferenceDataRepository,
)

__all__ = [
    "REFERENCE_KINDS",
    "InMemoryAuditLogsRepository",
    "PostgresAuditLogsRepository",
    "InMemoryBatchesRepository",
    "PostgresBatchesRepository",
    "InMemoryNotificationsRepository",
    "PostgresNotificationsRepository",
    "InMemoryParameterValuesRepository",
    "PostgresParameterValuesRepository",
    "InMemoryReferenceDataRepository",
    "PostgresReferenceDataRepository",
]

"""Data models for the storage coordinator."""

from storage_coordinator.models.events import (
    AgreementCancelled,
    AgreementCompleted,
    AgreementCreated,
    OfferingCreated,
    OfferingRemoved,
    OfferingUpdated,
    PaymentMade,
)
from storage_coordinator.models.records import (
    ActivityRecord,
    AgreementRecord,
    DispatchResult,
    FragmentTransfer,
    OfferingRecord,
    PaymentRecord,
    StoreCounts,
    TransferOutcome,
    TransferStatus,
)
from storage_coordinator.models.config import CoordinatorConfig, ProviderAgentConfig
from storage_coordinator.models.messages import (
    FileStored,
    ProviderRegistration,
    StorageError,
    StoreFileRequest,
)

__all__ = [
    "OfferingCreated", "OfferingUpdated", "OfferingRemoved",
    "AgreementCreated", "AgreementCancelled", "AgreementCompleted", "PaymentMade",
    "ActivityRecord", "AgreementRecord", "DispatchResult", "FragmentTransfer",
    "OfferingRecord", "PaymentRecord", "StoreCounts", "TransferOutcome", "TransferStatus",
    "CoordinatorConfig", "ProviderAgentConfig",
    "FileStored", "ProviderRegistration", "StorageError", "StoreFileRequest",
]

from .models import (
    COLLECTION_POLICY,
    AgentConnectionException,
    BlockMetadata,
    BlockStats,
    CleanupException,
    CollectionReport,
    CollectionStep,
    CollectorConfig,
    CollectorException,
    FailurePolicy,
    LighteningSummary,
    RemoteCommandException,
    ResponseParseException,
    SnapshotCreationRejectedException,
    SnapshotResponse,
    StepOutcome,
    StepResult,
    TransferException,
    UnsupportedBlockVersionException,
    load_collector_config,
)

__all__ = [
    "COLLECTION_POLICY",
    "AgentConnectionException",
    "BlockMetadata",
    "BlockStats",
    "CleanupException",
    "CollectionReport",
    "CollectionStep",
    "CollectorConfig",
    "CollectorException",
    "FailurePolicy",
    "LighteningSummary",
    "RemoteCommandException",
    "ResponseParseException",
    "SnapshotCreationRejectedException",
    "SnapshotResponse",
    "StepOutcome",
    "StepResult",
    "TransferException",
    "UnsupportedBlockVersionException",
    "load_collector_config",
]

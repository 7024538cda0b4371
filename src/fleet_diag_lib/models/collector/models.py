from __future__ import annotations

import datetime
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import yaml

from fleet_diag_lib.utils.functions import (
    epoch_millis_to_datetime,
    get_yaml_item_value,
    to_utc_datetime,
)

DEFAULT_PROMETHEUS_PORT = 9090
DEFAULT_PROMETHEUS_DATA_PATH = "/var/data"
SUPPORTED_BLOCK_VERSION = 1
SNAPSHOT_SUCCESS_STATUS = "success"


class CollectorException(Exception):
    """
    Base exception raised by the metrics collector
    """

    pass


class AgentConnectionException(CollectorException):
    """
    The remote channel could not be established
    """

    pass


class RemoteCommandException(CollectorException):
    """
    A remote command failed because of a transport error
    or because it wrote on the standard error
    """

    command: str
    stderr: str

    def __init__(self, message: str, command: str = None, stderr: str = None):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class ResponseParseException(CollectorException):
    """
    A remote command answered with a malformed payload
    """

    pass


class SnapshotCreationRejectedException(CollectorException):
    """
    Prometheus answered with a well-formed, non successful
    snapshot response
    """

    status: str
    error: str

    def __init__(self, status: str, error: str):
        super().__init__(
            f"failed to create prometheus snapshot "
            f"(status: {status} '{error}')"
        )
        self.status = status
        self.error = error


class UnsupportedBlockVersionException(CollectorException):
    """
    The block metadata format version is not understood, the
    block time bounds cannot be trusted
    """

    block: str
    version: int

    def __init__(self, block: str, version: int):
        super().__init__(f"version #{version} unsupported")
        self.block = block
        self.version = version


class TransferException(CollectorException):
    """
    The transfer resource could not be retrieved locally
    """

    resource: str

    def __init__(self, resource: str, message: str):
        super().__init__(f"failed to receive {resource} ({message})")
        self.resource = resource


class CleanupException(CollectorException):
    """
    A remote path could not be removed
    """

    path: str

    def __init__(self, path: str, message: str):
        super().__init__(f"failed to remove resource '{path}' ({message})")
        self.path = path


@dataclass(frozen=True, order=False)
class CollectorConfig:
    """
    Immutable configuration of a single collection run
    """

    timestamp_from: datetime.datetime
    """
    Lower bound of the requested time window (UTC)
    """
    timestamp_to: datetime.datetime
    """
    Upper bound of the requested time window (UTC)
    """
    port: int = DEFAULT_PROMETHEUS_PORT
    """
    Prometheus admin API port on the remote host
    """
    data_path: str = DEFAULT_PROMETHEUS_DATA_PATH
    """
    Prometheus data root on the remote host
    """
    copy_compressed: bool = True
    """
    If True the snapshot is archived before being transferred
    """

    def __post_init__(self):
        timestamp_from = to_utc_datetime(self.timestamp_from)
        timestamp_to = to_utc_datetime(self.timestamp_to)
        if timestamp_from > timestamp_to:
            raise Exception(
                f"invalid time window: {timestamp_from} is after "
                f"{timestamp_to}"
            )
        object.__setattr__(self, "timestamp_from", timestamp_from)
        object.__setattr__(self, "timestamp_to", timestamp_to)

    @staticmethod
    def from_yaml_dict(
        yaml_dict: Optional[dict[str, any]],
        timestamp_from: any,
        timestamp_to: any,
    ) -> CollectorConfig:
        """
        Builds the configuration from the collector yaml section:

        prometheus:
          port: 9090
          data-path: /var/data
        copy_compressed: true

        Missing keys fall back on the defaults.

        :param yaml_dict: the parsed yaml section (may be None)
        :param timestamp_from: lower bound of the time window
            (datetime, epoch seconds or date string)
        :param timestamp_to: upper bound of the time window
            (datetime, epoch seconds or date string)
        :return: the collector configuration
        """
        if yaml_dict is None:
            yaml_dict = {}
        prometheus = get_yaml_item_value(yaml_dict, "prometheus", {})
        exceptions = []
        if not isinstance(prometheus, dict):
            exceptions.append("prometheus section must be a dictionary")
            prometheus = {}

        port = get_yaml_item_value(
            prometheus, "port", DEFAULT_PROMETHEUS_PORT
        )
        data_path = get_yaml_item_value(
            prometheus, "data-path", DEFAULT_PROMETHEUS_DATA_PATH
        )
        copy_compressed = get_yaml_item_value(
            yaml_dict, "copy_compressed", True
        )

        if isinstance(port, bool) or not isinstance(port, int):
            exceptions.append("prometheus -> port must be a number")
        elif not 0 < port < 65536:
            exceptions.append("prometheus -> port out of range")
        if not isinstance(data_path, str) or data_path == "":
            exceptions.append("prometheus -> data-path must be a path")
        if not isinstance(copy_compressed, bool):
            exceptions.append("copy_compressed must be a boolean")
        if len(exceptions) > 0:
            raise Exception(", ".join(exceptions))

        return CollectorConfig(
            timestamp_from=timestamp_from,
            timestamp_to=timestamp_to,
            port=port,
            data_path=data_path,
            copy_compressed=copy_compressed,
        )


def load_collector_config(
    path: str, timestamp_from: any, timestamp_to: any
) -> CollectorConfig:
    """
    Loads the collector configuration from a yaml file. If the file
    contains a top level `metrics` section that section is used.

    :param path: yaml file path
    :param timestamp_from: lower bound of the time window
    :param timestamp_to: upper bound of the time window
    :return: the collector configuration
    """
    if not os.path.exists(path):
        raise Exception(f"collector config file not found {path}")
    with open(path, "r") as config_file:
        yaml_dict = yaml.safe_load(config_file)
    if yaml_dict is not None and not isinstance(yaml_dict, dict):
        raise Exception(f"invalid collector config file {path}")
    if yaml_dict and isinstance(yaml_dict.get("metrics"), dict):
        yaml_dict = yaml_dict["metrics"]
    return CollectorConfig.from_yaml_dict(
        yaml_dict, timestamp_from, timestamp_to
    )


@dataclass(order=False)
class SnapshotResponse:
    """
    Response of the Prometheus TSDB snapshot admin API
    """

    status: str
    name: str
    error: str

    @staticmethod
    def from_json(payload: str) -> SnapshotResponse:
        try:
            json_object = json.loads(payload)
        except ValueError as e:
            raise ResponseParseException(
                f"failed to unmarshal snapshot command output ({e})"
            )
        if not isinstance(json_object, dict):
            raise ResponseParseException(
                "failed to unmarshal snapshot command output "
                "(not a json object)"
            )
        data = json_object.get("data")
        if not isinstance(data, dict):
            data = {}
        return SnapshotResponse(
            status=str(json_object.get("status") or ""),
            name=str(data.get("name") or ""),
            error=str(json_object.get("error") or ""),
        )

    @property
    def succeeded(self) -> bool:
        return self.status == SNAPSHOT_SUCCESS_STATUS


def _json_integer(json_object: dict, key: str) -> int:
    value = json_object.get(key, 0)
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


@dataclass(order=False)
class BlockStats:
    num_samples: int = 0
    num_series: int = 0
    num_chunks: int = 0


@dataclass(order=False)
class BlockMetadata:
    """
    Content of a TSDB block meta.json file
    """

    ulid: str
    """
    Block identifier, used for logging only
    """
    version: int
    """
    Metadata format version, only 1 is understood
    """
    min_time: int
    """
    Lower bound of the block samples (epoch milliseconds)
    """
    max_time: int
    """
    Upper bound of the block samples (epoch milliseconds)
    """
    stats: BlockStats = field(default_factory=BlockStats)

    @staticmethod
    def from_json(payload: str) -> BlockMetadata:
        try:
            json_object = json.loads(payload)
            if not isinstance(json_object, dict):
                raise ValueError("not a json object")
            stats = json_object.get("stats") or {}
            return BlockMetadata(
                ulid=str(json_object.get("ulid", "")),
                version=_json_integer(json_object, "version"),
                min_time=_json_integer(json_object, "minTime"),
                max_time=_json_integer(json_object, "maxTime"),
                stats=BlockStats(
                    num_samples=_json_integer(stats, "numSamples"),
                    num_series=_json_integer(stats, "numSeries"),
                    num_chunks=_json_integer(stats, "numChunks"),
                ),
            )
        except (ValueError, TypeError, AttributeError) as e:
            raise ResponseParseException(
                f"failed to unmarshal block metadata ({e})"
            )

    @property
    def supported(self) -> bool:
        return self.version == SUPPORTED_BLOCK_VERSION

    def time_span(self) -> tuple[datetime.datetime, datetime.datetime]:
        """
        Converts the block bounds to UTC datetimes

        :raises ResponseParseException: if a bound is outside of
            the range supported by datetime
        :return: the (min, max) tuple
        """
        try:
            return (
                epoch_millis_to_datetime(self.min_time),
                epoch_millis_to_datetime(self.max_time),
            )
        except OverflowError as e:
            raise ResponseParseException(
                f"block time range {self.min_time} .. {self.max_time} "
                f"out of bounds ({e})"
            )


@dataclass(order=False)
class LighteningSummary:
    """
    Outcome of the time window filtering of a snapshot,
    every list holds remote block paths
    """

    kept: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    removal_failures: list[str] = field(default_factory=list)


class CollectionStep(str, Enum):
    connect = "connect"
    create_snapshot = "create snapshot"
    lighten_snapshot = "lighten snapshot"
    archive_snapshot = "archive snapshot"
    cleanup_snapshot = "cleanup snapshot"
    download = "download"
    cleanup_resource = "cleanup transfer resource"


class FailurePolicy(str, Enum):
    fatal = "fatal"
    soft = "soft"


COLLECTION_POLICY: dict[CollectionStep, FailurePolicy] = {
    CollectionStep.connect: FailurePolicy.fatal,
    CollectionStep.create_snapshot: FailurePolicy.fatal,
    CollectionStep.lighten_snapshot: FailurePolicy.soft,
    # acted on only after the snapshot cleanup has been attempted
    CollectionStep.archive_snapshot: FailurePolicy.fatal,
    CollectionStep.cleanup_snapshot: FailurePolicy.soft,
    CollectionStep.download: FailurePolicy.soft,
    CollectionStep.cleanup_resource: FailurePolicy.fatal,
}


class StepOutcome(str, Enum):
    succeeded = "succeeded"
    recovered = "recovered"
    failed = "failed"


@dataclass(order=False)
class StepResult:
    step: CollectionStep
    outcome: StepOutcome
    error: Optional[Exception] = None
    value: any = None

    @property
    def is_fatal(self) -> bool:
        return self.outcome == StepOutcome.failed


@dataclass(order=False)
class CollectionReport:
    """
    Summary of a successful collection run
    """

    host: str
    """
    Identity of the remote host
    """
    snapshot: Optional[str] = None
    """
    Name of the snapshot created on the remote host
    """
    transfer_resource: Optional[str] = None
    """
    Remote path that has been downloaded and removed
    """
    destination: Optional[str] = None
    """
    Local path where the snapshot has been stored
    """
    lightening: Optional[LighteningSummary] = None
    steps: list[StepResult] = field(default_factory=list)

    def get_step(self, step: CollectionStep) -> Optional[StepResult]:
        for result in self.steps:
            if result.step == step:
                return result
        return None

    @property
    def warnings(self) -> list[StepResult]:
        return [s for s in self.steps if s.outcome == StepOutcome.recovered]

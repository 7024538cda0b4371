import datetime
import os

from fleet_diag_lib.agent import RemoteAgent
from fleet_diag_lib.models.collector import (
    COLLECTION_POLICY,
    BlockMetadata,
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
)
from fleet_diag_lib.prometheus.commands import (
    TEMPORARY_SNAPSHOT_TARBALL_PATH,
    archive_command,
    block_metadata_command,
    create_snapshot_command,
    is_block_of,
    is_path_component,
    list_blocks_command,
    remove_command,
    snapshot_path,
)
from fleet_diag_lib.utils import SafeLogger


def falls_into_time_span(
    block_min: datetime.datetime,
    block_max: datetime.datetime,
    timestamp_from: datetime.datetime,
    timestamp_to: datetime.datetime,
) -> bool:
    """
    Decides if a block must be kept. Each side of the window is
    checked against either bound of the block: with ordered bounds
    this is a strict interval intersection, blocks with inverted
    bounds may be kept as well.

    :param block_min: lower bound of the block samples
    :param block_max: upper bound of the block samples
    :param timestamp_from: lower bound of the requested window
    :param timestamp_to: upper bound of the requested window
    :return: True if the block must be kept
    """
    return (block_min > timestamp_from or block_max > timestamp_from) and (
        block_min < timestamp_to or block_max < timestamp_to
    )


class MetricsCollector:
    """
    Collects a Prometheus snapshot from a single remote host,
    drops the blocks outside of the requested time window and
    downloads what is left in `<path>/snapshot`.
    """

    collector_config: CollectorConfig = None
    safe_logger: SafeLogger = None
    path: str = None

    def __init__(
        self,
        collector_config: CollectorConfig,
        path: str,
        safe_logger: SafeLogger = None,
    ):
        """
        :param collector_config: the run configuration
        :param path: local folder where the snapshot will be stored
        :param safe_logger: logging sink, if omitted a default SafeLogger
            will be instantiated that will simply use the logging package
        """
        if safe_logger is None:
            safe_logger = SafeLogger()
        self.collector_config = collector_config
        self.path = path
        self.safe_logger = safe_logger

    def collect(self, agent: RemoteAgent) -> CollectionReport:
        """
        Runs a full collection against the host of the agent.
        Once a remote resource exists its removal is always attempted,
        the failures that happen after that are raised only if the
        resource itself cannot be removed.

        :param agent: the remote agent of the host
        :raises CollectorException: the first fatal failure
        :return: the report of the run
        """
        host = agent.host_identity()
        log = self.safe_logger.with_fields(prefix=f"MC {host}")
        report = CollectionReport(host=host)
        log.info("Metrics collecting started")

        self._enforce(
            self._run_step(
                report,
                log,
                CollectionStep.connect,
                "Connecting",
                agent.connect,
            )
        )

        created = self._run_step(
            report,
            log,
            CollectionStep.create_snapshot,
            "Creating snapshot",
            self.create_snapshot,
            agent,
        )
        self._enforce(created)
        report.snapshot = created.value
        log.info(f"Snapshot name: {report.snapshot}")

        resource_name = "snapshot"
        src = snapshot_path(
            self.collector_config.data_path, report.snapshot
        )

        lightened = self._run_step(
            report,
            log,
            CollectionStep.lighten_snapshot,
            "Lightening snapshot",
            self.lighten_snapshot,
            agent,
            src,
            log,
        )
        report.lightening = lightened.value

        if self.collector_config.copy_compressed:
            archived = self._run_step(
                report,
                log,
                CollectionStep.archive_snapshot,
                "Creating snapshot tarball",
                self.archive_snapshot,
                agent,
                src,
                TEMPORARY_SNAPSHOT_TARBALL_PATH,
            )
            self._run_step(
                report,
                log,
                CollectionStep.cleanup_snapshot,
                "Cleanup snapshot",
                self.remove_resource,
                agent,
                src,
            )
            # nothing is left to download if the tarball is missing
            self._enforce(archived)
            src = TEMPORARY_SNAPSHOT_TARBALL_PATH
            resource_name = "snapshot tarball"

        report.transfer_resource = src
        report.destination = os.path.join(self.path, "snapshot")

        self._run_step(
            report,
            log,
            CollectionStep.download,
            "Downloading snapshot",
            self.download_snapshot,
            agent,
            src,
            report.destination,
            resource_name,
        )

        self._enforce(
            self._run_step(
                report,
                log,
                CollectionStep.cleanup_resource,
                f"Cleanup {resource_name}",
                self.remove_resource,
                agent,
                src,
            )
        )

        log.info("Metrics collecting completed")
        return report

    def _run_step(
        self,
        report: CollectionReport,
        log: SafeLogger,
        step: CollectionStep,
        description: str,
        func,
        *args,
    ) -> StepResult:
        """
        Runs a pipeline step, classifies its outcome following
        COLLECTION_POLICY and records it in the report.
        """
        log.info(f"{description}...")
        try:
            value = func(*args)
        except Exception as e:
            if COLLECTION_POLICY[step] == FailurePolicy.fatal:
                result = StepResult(step, StepOutcome.failed, error=e)
                log.error(str(e))
            else:
                result = StepResult(step, StepOutcome.recovered, error=e)
                log.warning(f"{description} failed: {e}")
            report.steps.append(result)
            return result

        log.info(f"{description}  OK")
        result = StepResult(step, StepOutcome.succeeded, value=value)
        report.steps.append(result)
        return result

    @staticmethod
    def _enforce(result: StepResult):
        if result.is_fatal:
            raise result.error

    def _execute(
        self, agent: RemoteAgent, command: str, failure_message: str
    ) -> str:
        """
        Executes a remote command, a non empty stderr is
        considered a failure whatever the exit status is.

        :param agent: the remote agent
        :param command: the command line
        :param failure_message: prefix of the exception message
        :return: the command stdout
        """
        try:
            stdout, stderr = agent.execute_command(command)
        except RemoteCommandException:
            raise
        except Exception as e:
            raise RemoteCommandException(
                f"{failure_message}: {e}", command=command
            )
        if len(stderr) > 0:
            error = stderr.decode("utf-8", errors="replace")
            raise RemoteCommandException(
                f"{failure_message}: {error}", command=command, stderr=error
            )
        return stdout.decode("utf-8", errors="replace")

    def create_snapshot(self, agent: RemoteAgent) -> str:
        """
        Triggers the snapshot through the Prometheus admin API

        :param agent: the remote agent
        :return: the snapshot name
        """
        output = self._execute(
            agent,
            create_snapshot_command(self.collector_config.port),
            "failed to create prometheus snapshot",
        )
        response = SnapshotResponse.from_json(output)
        if not response.succeeded:
            raise SnapshotCreationRejectedException(
                response.status, response.error
            )
        if not is_path_component(response.name):
            raise ResponseParseException(
                f"invalid prometheus snapshot name: {response.name!r}"
            )
        return response.name

    def get_block_list(self, agent: RemoteAgent, src: str) -> list[str]:
        output = self._execute(
            agent,
            list_blocks_command(src),
            "failed to get block list of prometheus snapshot",
        )
        return output.split()

    def get_block_metadata(
        self, agent: RemoteAgent, block: str
    ) -> BlockMetadata:
        output = self._execute(
            agent,
            block_metadata_command(block),
            "failed to get block metadata",
        )
        return BlockMetadata.from_json(output)

    def lighten_snapshot(
        self, agent: RemoteAgent, src: str, safe_logger: SafeLogger = None
    ) -> LighteningSummary:
        """
        Removes from the snapshot the blocks that do not fall into
        the configured time window. Only the block listing can fail,
        every other failure is logged and the block is left in place.

        :param agent: the remote agent
        :param src: remote path of the snapshot
        :param safe_logger: logger to use, defaults to the collector one
        :return: the paths of the kept, dropped and skipped blocks
        """
        log = safe_logger if safe_logger is not None else self.safe_logger
        blocks = self.get_block_list(agent, src)
        summary = LighteningSummary()

        for index, block in enumerate(blocks):
            if not is_block_of(src, block):
                log.warning(f"Ignoring block ({block}): not in {src}")
                summary.skipped.append(block)
                continue
            try:
                metadata = self.get_block_metadata(agent, block)
                if not metadata.supported:
                    raise UnsupportedBlockVersionException(
                        block, metadata.version
                    )
                block_min, block_max = metadata.time_span()
            except CollectorException as e:
                log.warning(f"Ignoring block ({block}): {e}")
                summary.skipped.append(block)
                continue

            keep = falls_into_time_span(
                block_min,
                block_max,
                self.collector_config.timestamp_from,
                self.collector_config.timestamp_to,
            )
            decision = "will be skipped"
            if keep:
                decision = "falls into the time span"
            log.info(
                f"Block {index + 1}/{len(blocks)} {metadata.ulid}  "
                f"{block_min} .. {block_max}: {decision}"
            )

            if keep:
                summary.kept.append(block)
                continue
            try:
                self.remove_resource(agent, block)
                summary.dropped.append(block)
            except CleanupException as e:
                log.warning(f"Failed to drop snapshot block: {e}")
                summary.removal_failures.append(block)

        return summary

    def archive_snapshot(self, agent: RemoteAgent, src: str, dest: str):
        self._execute(
            agent,
            archive_command(dest, src),
            "failed to create snapshot tarball",
        )

    def download_snapshot(
        self,
        agent: RemoteAgent,
        src: str,
        dest: str,
        resource_name: str = "snapshot",
    ):
        """
        Copies the remote resource in the local destination

        :param agent: the remote agent
        :param src: remote path of the resource
        :param dest: local destination folder
        :param resource_name: used to identify the resource in the error
        """
        try:
            agent.retrieve_directory(src, dest)
        except Exception as e:
            raise TransferException(f"{resource_name} {src}", str(e))

    def remove_resource(self, agent: RemoteAgent, path: str):
        try:
            self._execute(
                agent, remove_command(path), "failed to remove resource"
            )
        except (CollectorException, ValueError) as e:
            raise CleanupException(path, str(e))

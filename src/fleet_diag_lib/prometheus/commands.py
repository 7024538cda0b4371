import posixpath
import shlex

PROMETHEUS_SNAPSHOT_FOLDER = "snapshots"
PROMETHEUS_BLOCK_METADATA_FILE = "meta.json"
TEMPORARY_SNAPSHOT_TARBALL_PATH = "/tmp/InstaclustrCollection.tar"


def _checked_path(path: str) -> str:
    if not isinstance(path, str) or path.strip() == "":
        raise ValueError("remote path must be a non empty string")
    if posixpath.normpath(path).lstrip("/") == "":
        raise ValueError("refusing to target the filesystem root")
    return shlex.quote(path)


def is_path_component(name: str) -> bool:
    """
    Checks that a name returned by the remote host can be
    safely joined to a trusted path

    :param name: the name to check
    :return: True if `name` is a single path component
    """
    return (
        isinstance(name, str)
        and name not in ["", ".", ".."]
        and "/" not in name
        and "\0" not in name
    )


def create_snapshot_command(port: int) -> str:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"invalid prometheus port: {port}")
    if not 0 < port < 65536:
        raise ValueError(f"prometheus port out of range: {port}")
    return (
        f"curl -s -XPOST http://localhost:{port}/api/v1/admin/tsdb/snapshot"
    )


def list_blocks_command(snapshot_path: str) -> str:
    # the glob must stay outside the quotes to be expanded
    return f"ls -d {_checked_path(snapshot_path)}/*/"


def block_metadata_command(block_path: str) -> str:
    return "cat " + _checked_path(
        posixpath.join(block_path, PROMETHEUS_BLOCK_METADATA_FILE)
    )


def archive_command(archive_path: str, source_path: str) -> str:
    return (
        f"tar -cf {_checked_path(archive_path)} "
        f"-C {_checked_path(source_path)} ."
    )


def remove_command(path: str) -> str:
    return f"rm -rf {_checked_path(path)}"


def snapshot_path(data_path: str, snapshot_name: str) -> str:
    """
    :param data_path: prometheus data root (trusted)
    :param snapshot_name: snapshot name returned by prometheus
    :return: the remote path of the snapshot
    """
    if not is_path_component(snapshot_name):
        raise ValueError(f"invalid snapshot name: {snapshot_name!r}")
    return posixpath.join(data_path, PROMETHEUS_SNAPSHOT_FOLDER, snapshot_name)


def is_block_of(snapshot: str, block_path: str) -> bool:
    """
    Checks that a path listed by the remote host is
    a direct child of the snapshot folder

    :param snapshot: the snapshot remote path
    :param block_path: the block path as listed (may end with `/`)
    :return: True if the block belongs to the snapshot
    """
    block = posixpath.normpath(block_path)
    return posixpath.dirname(
        block
    ) == posixpath.normpath(snapshot) and is_path_component(
        posixpath.basename(block)
    )

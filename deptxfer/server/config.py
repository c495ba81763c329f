# deptxfer/server/config.py
# Server configuration settings.

from deptxfer.common.constants import (
    CHUNK_SIZE,
    DEFAULT_BACKLOG,
    DEFAULT_BASE_DIR,
    DEFAULT_DIR_MODE,
    DEFAULT_IO_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_SERVER_HOST,
    DEFAULT_TRANSFER_TIMEOUT,
)
from deptxfer.server.storage import StorageGuard


class ServerConfig:
    """
    Server configuration.

    Defaults come from deptxfer.common.constants; the command line overrides
    them through from_args().
    """

    def __init__(self, host: str = DEFAULT_SERVER_HOST, port: int = DEFAULT_PORT,
                 base_dir: str = DEFAULT_BASE_DIR, backlog: int = DEFAULT_BACKLOG,
                 io_timeout=DEFAULT_IO_TIMEOUT, transfer_timeout=DEFAULT_TRANSFER_TIMEOUT,
                 chunk_size: int = CHUNK_SIZE,
                 lock_scope: str = StorageGuard.SCOPE_GLOBAL, users_file=None,
                 credentials_file=None, metrics_file=None, dir_mode: int = DEFAULT_DIR_MODE):
        if not 0 <= int(port) <= 65535:
            raise ValueError("Port must be between 0-65535")
        if int(backlog) < 1:
            raise ValueError("Backlog must be at least 1")
        if int(chunk_size) < 1:
            raise ValueError("Chunk size must be at least 1")
        if lock_scope not in StorageGuard.SCOPES:
            raise ValueError(f"Lock scope must be one of: {', '.join(StorageGuard.SCOPES)}")

        self.host = host
        self.port = int(port)
        self.base_dir = base_dir
        self.backlog = int(backlog)
        # 0 or None: no timeout, reads may block forever
        self.io_timeout = float(io_timeout) if io_timeout else None
        self.transfer_timeout = float(transfer_timeout) if transfer_timeout else None
        self.chunk_size = int(chunk_size)
        self.lock_scope = lock_scope
        self.dir_mode = dir_mode

        # Optional collaborators
        self.users_file = users_file
        self.credentials_file = credentials_file
        self.metrics_file = metrics_file

    @classmethod
    def from_args(cls, args):
        """Build a config from an argparse namespace of the 'serve' command."""
        return cls(
            host=args.host,
            port=args.port,
            base_dir=args.base_dir,
            backlog=args.backlog,
            io_timeout=args.timeout,
            transfer_timeout=args.transfer_timeout,
            chunk_size=args.chunk_size,
            lock_scope=args.lock_scope,
            users_file=args.users,
            credentials_file=args.credentials,
            metrics_file=args.metrics_file,
        )

    def get_connection_info(self):
        return {
            "host": self.host,
            "port": self.port,
            "backlog": self.backlog,
            "io_timeout": self.io_timeout,
            "transfer_timeout": self.transfer_timeout,
        }

    def get_storage_settings(self):
        return {
            "base_dir": self.base_dir,
            "lock_scope": self.lock_scope,
            "chunk_size": self.chunk_size,
            "dir_mode": oct(self.dir_mode),
        }

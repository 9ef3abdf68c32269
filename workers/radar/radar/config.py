"""
Process settings for the radar worker.

The .env file is loaded before the YAML configuration is built so that
${VAR} references in config/environments/*.yaml resolve against it.
"""

from dotenv import load_dotenv

load_dotenv()

from .config_manager import WorkerConfig, get_worker_config  # noqa: E402


class Settings:
    """Connection settings the entrypoints need at startup."""

    def __init__(self, worker_config: WorkerConfig):
        self.redis_url = worker_config.redis_url
        self.database_url = worker_config.database_url
        self.storage_dir = worker_config.storage_dir

    @property
    def database_host(self) -> str:
        """Database URL without credentials, for logs."""
        return self.database_url.rsplit("@", 1)[-1]


config = get_worker_config()

settings = Settings(config)

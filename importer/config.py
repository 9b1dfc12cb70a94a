"""Runtime configuration read from environment variables."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional


@dataclass
class Settings:
    """Importer settings."""
    state_table: str = 'events-importer-state'
    cache_table: str = 'events-importer-cache'
    events_table: str = 'events-importer-events'
    api_url: str = 'http://eventapi.visitseattle.org/ClientService.asmx'
    api_token: str = ''
    chunk_size: int = 200
    timeout_seconds: int = 30
    settle_seconds: float = 2
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings with defaults for any unset variable
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            state_table=env.get('STATE_TABLE', defaults.state_table),
            cache_table=env.get('CACHE_TABLE', defaults.cache_table),
            events_table=env.get('EVENTS_TABLE', defaults.events_table),
            api_url=env.get('API_URL', defaults.api_url),
            api_token=env.get('API_TOKEN', defaults.api_token),
            chunk_size=int(env.get('CHUNK_SIZE', defaults.chunk_size)),
            timeout_seconds=int(env.get('TIMEOUT_SECONDS', defaults.timeout_seconds)),
            settle_seconds=float(env.get('SETTLE_SECONDS', defaults.settle_seconds)),
            log_level=env.get('LOG_LEVEL', defaults.log_level)
        )

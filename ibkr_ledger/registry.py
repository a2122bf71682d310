"""Secret persistence and Flex query configuration storage."""

import asyncio
import os
import re
from base64 import b64decode, b64encode
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

import yaml

from ibkr_ledger.logging_setup import get_logger

logger = get_logger(__name__)

SECRET_FLEX_TOKEN = "flex_token"
SECRET_FLEX_CONFIGS = "flex_query_configs"
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class SecretStore(Protocol):
    """Async string key-value store for credentials and settings."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...


class FileSecretStore:
    """Secret store keeping one base64-encoded YAML file per key in a private directory."""

    _dir_env_var_name = "IBKR_LEDGER_REGISTRY_DIR"
    _dir_mode = 0o700
    _file_mode = 0o600

    @classmethod
    def registry_dir(cls) -> Path:
        """Return path to persisted secrets directory."""
        if path := os.environ.get(cls._dir_env_var_name):
            return Path(path).expanduser()
        return Path.home() / ".ibkr-ledger"

    @classmethod
    def _entry_path(cls, key: str) -> Path:
        """Return file path for a key, rejecting path-like keys."""
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid secret key: {key!r}")
        return cls.registry_dir() / f"{key}.yaml"

    async def get(self, key: str) -> str | None:
        """Return stored value, or None when the key is absent."""
        entry_path = self._entry_path(key)
        if not entry_path.is_file():
            return None
        encoded = entry_path.read_text(encoding="utf-8").strip()
        decoded = b64decode(encoded.encode("ascii"), validate=True).decode("utf-8")
        entry = yaml.safe_load(decoded)
        if not isinstance(entry, dict) or entry.get("key") != key:
            raise ValueError(f"Corrupted secret entry: {key}")
        return str(entry["value"])

    async def set(self, key: str, value: str) -> None:
        """Persist value with owner-only permissions."""
        entry_path = self._entry_path(key)
        registry_path = entry_path.parent
        registry_path.mkdir(parents=True, exist_ok=True, mode=self._dir_mode)
        registry_path.chmod(self._dir_mode)
        fd = os.open(entry_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, self._file_mode)
        with os.fdopen(fd, "w", encoding="utf-8") as stream:
            decoded = yaml.safe_dump({"key": key, "value": value}, sort_keys=False)
            stream.write(b64encode(decoded.encode("utf-8")).decode("ascii"))
        entry_path.chmod(self._file_mode)

    async def delete(self, key: str) -> None:
        """Remove stored value if present."""
        self._entry_path(key).unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class FlexQueryConfig:
    """Saved Flex query with the sub-ledger group it imports into."""

    id: str
    name: str
    query_id: str
    account_group: str
    auto_fetch_enabled: bool = False
    last_fetch_time: str | None = None
    last_fetch_status: str | None = None
    last_fetch_error: str | None = None

    @classmethod
    def from_entry(cls, entry: object) -> "FlexQueryConfig | None":
        """Build config from a stored mapping, or None when required fields are missing."""
        if not isinstance(entry, dict):
            return None
        required = ("id", "name", "query_id", "account_group")
        if not all(isinstance(entry.get(name), str) for name in required):
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in entry.items() if key in known})

    def to_entry(self) -> dict[str, Any]:
        """Return mapping persisted in the secret store."""
        return asdict(self)


@dataclass(frozen=True, slots=True)
class LoadConfigsResult:
    """Outcome of reading configs, distinguishing empty from unreadable storage."""

    success: bool
    configs: list[FlexQueryConfig] | None
    error: str | None = None


class FlexConfigStorage:
    """Flex token and query configs kept in a secret store.

    Every read-modify-write holds one asyncio lock.
    """

    def __init__(self, store: SecretStore) -> None:
        """Bind storage to a secret store."""
        self.store = store
        self._lock = asyncio.Lock()

    async def load_configs_safe(self) -> LoadConfigsResult:
        """Read configs, dropping malformed entries and reporting unreadable storage."""
        try:
            raw = await self.store.get(SECRET_FLEX_CONFIGS)
            parsed = yaml.safe_load(raw) if raw else []
        except (OSError, ValueError, yaml.YAMLError) as error:
            logger.error("Failed to load Flex Query configs: %s", error)
            return LoadConfigsResult(False, None, str(error))
        if not isinstance(parsed, list):
            logger.error("Flex Query configs storage is corrupted (not a list), resetting")
            return LoadConfigsResult(True, [])
        configs = []
        for entry in parsed:
            if (config := FlexQueryConfig.from_entry(entry)) is None:
                logger.warning("Skipping invalid config entry: %r", entry)
                continue
            configs.append(config)
        return LoadConfigsResult(True, configs)

    async def load_configs(self) -> list[FlexQueryConfig]:
        """Return stored configs, empty when storage is unreadable."""
        return (await self.load_configs_safe()).configs or []

    async def _save_configs(self, configs: list[FlexQueryConfig]) -> None:
        """Overwrite stored configs."""
        payload = yaml.safe_dump([config.to_entry() for config in configs], sort_keys=False)
        await self.store.set(SECRET_FLEX_CONFIGS, payload)

    async def add_config(
        self,
        name: str,
        query_id: str,
        account_group: str,
        auto_fetch_enabled: bool = False,
    ) -> FlexQueryConfig:
        """Store a new config under a generated id."""
        async with self._lock:
            configs = await self.load_configs()
            config = FlexQueryConfig(
                id=f"{uuid4().int % 1_000_000_000:09d}",
                name=name,
                query_id=str(query_id).strip(),
                account_group=account_group,
                auto_fetch_enabled=auto_fetch_enabled,
            )
            configs.append(config)
            await self._save_configs(configs)
            return config

    async def update_config(self, config_id: str, **updates: Any) -> FlexQueryConfig | None:
        """Apply field updates to one config, returning None when it does not exist."""
        updates.pop("id", None)
        async with self._lock:
            configs = await self.load_configs()
            for index, config in enumerate(configs):
                if config.id == config_id:
                    configs[index] = replace(config, **updates)
                    await self._save_configs(configs)
                    return configs[index]
            return None

    async def delete_config(self, config_id: str) -> bool:
        """Remove one config, returning whether it existed."""
        async with self._lock:
            configs = await self.load_configs()
            remaining = [config for config in configs if config.id != config_id]
            if len(remaining) == len(configs):
                return False
            await self._save_configs(remaining)
            return True

    async def update_status(
        self,
        config_id: str,
        last_fetch_time: str,
        last_fetch_status: str,
        last_fetch_error: str | None = None,
    ) -> None:
        """Record outcome of the latest fetch; missing configs are ignored."""
        async with self._lock:
            configs = await self.load_configs()
            for index, config in enumerate(configs):
                if config.id == config_id:
                    configs[index] = replace(
                        config,
                        last_fetch_time=last_fetch_time,
                        last_fetch_status=last_fetch_status,
                        last_fetch_error=last_fetch_error,
                    )
                    await self._save_configs(configs)
                    return
            logger.warning("Cannot update status: config %s not found", config_id)

    async def load_token(self) -> str | None:
        """Return stored Flex token."""
        return await self.store.get(SECRET_FLEX_TOKEN)

    async def save_token(self, token: str) -> None:
        """Persist Flex token."""
        await self.store.set(SECRET_FLEX_TOKEN, token.strip())

    async def delete_token(self) -> None:
        """Forget Flex token."""
        await self.store.delete(SECRET_FLEX_TOKEN)

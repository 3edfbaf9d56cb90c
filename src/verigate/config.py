from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    discord_token: str
    verified_role_ids: tuple[int, ...]
    unverified_role_id: int | None = None
    inactivity_threshold_days: int = 30
    challenge_timeout_seconds: int = 300
    expiry_sweep_hour_utc: int = 0
    store_backend: str = "msgpack"
    store_path: Path = Path("data/verigate.msgpack")
    mysql_host: str = ""
    mysql_port: int = 3306
    mysql_db: str = ""
    mysql_user: str = ""
    mysql_pass: str = ""
    mysql_pool_max: int = 10
    store_connect_attempts: int = 5
    store_connect_backoff_sec: float = 2.0
    log_channel_id: int = 0

    def target_roles(self, verified: bool) -> tuple[set[int], set[int]]:
        """(wanted, unwanted) role ids for a member in the given state."""
        verified_roles = set(self.verified_role_ids)
        marker = {self.unverified_role_id} if self.unverified_role_id else set()
        if verified:
            return verified_roles, marker
        return marker, verified_roles

    @staticmethod
    def load(path: Path = Path("passwords.txt")) -> "Settings":
        values = _parse_passwords_file(path)

        def get(key: str, default: str = "") -> str:
            raw = values.get(key)
            if raw is None:
                raw = os.getenv(key, default)
            return str(raw).strip()

        token = get("DISCORD_TOKEN")
        if not token:
            raise RuntimeError("DISCORD_TOKEN is required in passwords.txt or env.")
        verified_role_ids = _parse_id_list("VERIFIED_ROLE_IDS", get("VERIFIED_ROLE_IDS"))
        if not verified_role_ids:
            raise RuntimeError("VERIFIED_ROLE_IDS is required (comma-separated role ids).")
        unverified_role_id = _parse_int("UNVERIFIED_ROLE_ID", get("UNVERIFIED_ROLE_ID", "0")) or None
        if unverified_role_id in verified_role_ids:
            raise RuntimeError("UNVERIFIED_ROLE_ID must not also be listed in VERIFIED_ROLE_IDS.")

        store_backend = get("STORE_BACKEND", "msgpack").lower()
        if store_backend not in {"msgpack", "mysql"}:
            raise RuntimeError(f"STORE_BACKEND must be 'msgpack' or 'mysql', got {store_backend!r}.")
        mysql_host = get("MYSQL_HOST")
        mysql_db = get("MYSQL_DB")
        if store_backend == "mysql" and not (mysql_host and mysql_db):
            raise RuntimeError("MYSQL_HOST and MYSQL_DB are required when STORE_BACKEND=mysql.")

        sweep_hour = _parse_int("EXPIRY_SWEEP_HOUR_UTC", get("EXPIRY_SWEEP_HOUR_UTC", "0"))
        if not 0 <= sweep_hour <= 23:
            raise RuntimeError("EXPIRY_SWEEP_HOUR_UTC must be between 0 and 23.")

        return Settings(
            discord_token=token,
            verified_role_ids=verified_role_ids,
            unverified_role_id=unverified_role_id,
            inactivity_threshold_days=_parse_positive("INACTIVITY_THRESHOLD_DAYS", get("INACTIVITY_THRESHOLD_DAYS", "30")),
            challenge_timeout_seconds=_parse_positive("CHALLENGE_TIMEOUT_SECONDS", get("CHALLENGE_TIMEOUT_SECONDS", "300")),
            expiry_sweep_hour_utc=sweep_hour,
            store_backend=store_backend,
            store_path=Path(get("STORE_PATH", "data/verigate.msgpack")),
            mysql_host=mysql_host,
            mysql_port=_parse_int("MYSQL_PORT", get("MYSQL_PORT", "3306")),
            mysql_db=mysql_db,
            mysql_user=get("MYSQL_USER"),
            mysql_pass=get("MYSQL_PASS"),
            mysql_pool_max=_parse_positive("MYSQL_POOL_MAX", get("MYSQL_POOL_MAX", "10")),
            store_connect_attempts=_parse_positive("STORE_CONNECT_ATTEMPTS", get("STORE_CONNECT_ATTEMPTS", "5")),
            store_connect_backoff_sec=_parse_float("STORE_CONNECT_BACKOFF_SEC", get("STORE_CONNECT_BACKOFF_SEC", "2.0")),
            log_channel_id=_parse_int("LOG_CHANNEL_ID", get("LOG_CHANNEL_ID", "0")),
        )


def _parse_passwords_file(path: Path) -> dict[str, str]:
    # Missing file is fine: every key can come from the environment instead.
    if not path.exists():
        return {}
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values


def _parse_int(key: str, raw: str) -> int:
    if not raw:
        return 0
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from exc


def _parse_positive(key: str, raw: str) -> int:
    value = _parse_int(key, raw)
    if value <= 0:
        raise RuntimeError(f"{key} must be a positive integer, got {raw!r}.")
    return value


def _parse_float(key: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be a number, got {raw!r}.") from exc
    if value < 0:
        raise RuntimeError(f"{key} must not be negative.")
    return value


def _parse_id_list(key: str, raw: str) -> tuple[int, ...]:
    ids: list[int] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        value = _parse_int(key, part)
        if value <= 0:
            raise RuntimeError(f"{key} contains an invalid role id: {part!r}.")
        if value not in ids:
            ids.append(value)
    return tuple(ids)

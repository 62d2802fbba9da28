"""Service settings.

Values come from environment variables named ``SDM_<SECTION>__<KEY>``
(for example ``SDM_LEDGER__RPC_URL``), optionally seeded from a ``.env``
file. CLI flags of the form ``--<section>.<key>`` are applied underneath
the environment: env takes precedence over CLI.
"""

from __future__ import annotations

import argparse
import os
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError

from sdmarket.base.errors import ConfigError

ENV_PREFIX = "SDM_"
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LedgerSettings(BaseModel):
    rpc_url: str = ""
    contract_address: str = ""
    signer_private_key: str = ""
    confirmations: int = Field(default=2, ge=1)
    confirmation_timeout: float = Field(default=300.0, gt=0)
    receipt_poll_interval: float = Field(default=2.0, gt=0)


class MirrorSettings(BaseModel):
    db_url: str = "sqlite+aiosqlite:///sdmarket/data/mirror.db"
    echo: bool = False


class IpfsSettings(BaseModel):
    api_url: str = ""
    project_id: str = ""
    project_secret: str = ""
    gateway: str = "https://ipfs.io/ipfs/"
    timeout: float = 30.0


class S3Settings(BaseModel):
    bucket: str = ""
    region: str = "us-east-1"
    endpoint_url: str = ""


class QualitySettings(BaseModel):
    threshold: int = Field(default=70, ge=0, le=100)
    verifier_address: str = ZERO_ADDRESS
    auto_verify: bool = False


class IngestSettings(BaseModel):
    start_block: int = Field(default=0, ge=0)
    poll_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=1000, ge=1)
    max_attempts: int = Field(default=5, ge=1)
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    reconcile_interval: float = Field(default=120.0, gt=0)
    state_dir: str = "sdmarket/data"


class MarketSettings(BaseModel):
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    mirror: MirrorSettings = Field(default_factory=MirrorSettings)
    ipfs: IpfsSettings = Field(default_factory=IpfsSettings)
    s3: S3Settings = Field(default_factory=S3Settings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)


def _collect(env: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    sections: dict[str, dict[str, Any]] = {}
    known = MarketSettings.model_fields
    for key, value in env.items():
        if not key.startswith(ENV_PREFIX) or "__" not in key:
            continue
        section, _, field = key[len(ENV_PREFIX):].lower().partition("__")
        if section not in known or not field:
            continue
        sections.setdefault(section, {})[field] = value
    return sections


def load_settings(
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Mapping[str, Any]] | None = None,
) -> MarketSettings:
    """Build settings from ``overrides`` (CLI) then ``env`` on top."""
    merged: dict[str, dict[str, Any]] = {}
    for section, values in (overrides or {}).items():
        merged.setdefault(section, {}).update(
            {k: v for k, v in values.items() if v is not None}
        )
    for section, values in _collect(os.environ if env is None else env).items():
        merged.setdefault(section, {}).update(values)

    try:
        return MarketSettings.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"invalid settings: {e}") from e


def add_args(parser: argparse.ArgumentParser) -> None:
    """Register ``--<section>.<key>`` flags for every setting."""
    for section, field in MarketSettings.model_fields.items():
        model = field.annotation
        for name, sub in model.model_fields.items():
            parser.add_argument(
                f"--{section}.{name}",
                dest=f"{section}.{name}",
                default=None,
                help=f"{section} {name.replace('_', ' ')} (default: {sub.default!r})",
            )


def overrides_from_args(args: argparse.Namespace) -> dict[str, dict[str, Any]]:
    """Turn parsed dotted flags back into nested section dicts."""
    out: dict[str, dict[str, Any]] = {}
    for dest, value in vars(args).items():
        if "." not in dest or value is None:
            continue
        section, _, name = dest.partition(".")
        if section in MarketSettings.model_fields:
            out.setdefault(section, {})[name] = value
    return out


__all__ = [
    "ENV_PREFIX",
    "ZERO_ADDRESS",
    "IngestSettings",
    "IpfsSettings",
    "LedgerSettings",
    "MarketSettings",
    "MirrorSettings",
    "QualitySettings",
    "S3Settings",
    "add_args",
    "load_settings",
    "overrides_from_args",
]

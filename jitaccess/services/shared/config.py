"""
JIT access configuration loading and validation.

One settings object, enumerated keys. Sources in priority order:
  1. keyword arguments (tests, CLI flags)
  2. environment: JIT_ prefix, "__" between nesting levels
     (JIT_SLACK__SIGNING_SECRET, JIT_ACCESS__MAX_DURATION=2h)
  3. YAML file: $JIT_CONFIG, else the first of DEFAULT_CONFIG_LOCATIONS
  4. defaults below

YAML keys may be camelCase (signingSecret, maxDuration) or snake_case.
"""

import os
import re
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, ClassVar, Dict, Iterable, Literal, Optional

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from jitaccess.services.shared.durations import parse_duration
from jitaccess.services.shared.errors import FatalConfigError, InvalidDuration

DEFAULT_CONFIG_LOCATIONS: tuple[Path, ...] = (
    Path("/etc/jitaccess/config.yaml"),
    Path("./config/jitaccess.yaml"),
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: Any) -> Any:
    return _CAMEL_BOUNDARY.sub("_", key).lower() if isinstance(key, str) else key


def _snake_case_sections(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Rewrite section and cluster keys to field names so file values merge
    with env and CLI overrides. Map values (teams, tags) keep their keys."""
    out: Dict[str, Any] = {}
    for key, value in raw.items():
        key = _snake(key)
        if isinstance(value, dict):
            value = {_snake(k): v for k, v in value.items()}
        elif key == "clusters" and isinstance(value, list):
            value = [{_snake(k): v for k, v in item.items()} if isinstance(item, dict) else item
                     for item in value]
        out[key] = value
    return out


def _coerce_duration(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return parse_duration(value)
        except InvalidDuration as exc:
            raise ValueError(exc.message) from exc
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    return value


Duration = Annotated[timedelta, BeforeValidator(_coerce_duration)]


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ── Sections ──────────────────────────────────────────────────────────────────

class ServerSettings(_Section):
    host: str = "0.0.0.0"
    port: int = 8080
    read_timeout: Duration = timedelta(seconds=15)
    write_timeout: Duration = timedelta(seconds=15)
    idle_timeout: Duration = timedelta(seconds=60)


class SlackSettings(_Section):
    token: Optional[str] = Field(default=None, repr=False)
    signing_secret: Optional[str] = Field(default=None, repr=False)
    api_base_url: str = "https://slack.com/api"
    # max |now - X-Slack-Request-Timestamp|
    request_tolerance: Duration = timedelta(minutes=5)
    email_domain: Optional[str] = Field(
        default=None,
        description="Fallback <user>@<domain> when the profile lookup returns no email.",
    )


class AwsSettings(_Section):
    region: str = "us-east-1"
    account_ids: list[str] = Field(default_factory=list)
    saml_provider_arn: Optional[str] = None
    eks_cluster_prefix: Optional[str] = None
    role_name: str = "JITAccessRole"
    endpoint_url: Optional[str] = None
    connect_timeout: Duration = timedelta(seconds=10)
    read_timeout: Duration = timedelta(seconds=30)
    max_attempts: int = 5


class AccessSettings(_Section):
    max_duration: Duration = timedelta(hours=1)
    approval_required: bool = True


class LogSettings(_Section):
    level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    format: Literal["json", "console"] = "json"

    @field_validator("level", "format", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value


class AuthSettings(_Section):
    admin_users: list[str] = Field(default_factory=list)
    approvers: list[str] = Field(default_factory=list)
    # team name → member identities; a team listed as a required approver is
    # satisfied by any member
    teams: Dict[str, list[str]] = Field(default_factory=dict)


class DatabaseSettings(_Section):
    url: str = "sqlite:///./jitaccess.db"


class ControllerSettings(_Section):
    workers: int = 2
    reconcile_timeout: Duration = timedelta(seconds=30)
    max_grant_attempts: int = 5


class SweeperSettings(_Section):
    enabled: bool = True
    interval: Duration = timedelta(seconds=60)


class ClusterSeed(_Section):
    name: str
    display_name: Optional[str] = None
    account_id: str
    region: str
    environment: Optional[str] = None
    max_duration: Optional[str] = None
    required_approvers: int = 0
    enabled: bool = True
    role_arn: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


# ── Root ──────────────────────────────────────────────────────────────────────

class JitSettings(BaseSettings):
    """Validated settings for the access control plane."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="JIT_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server:     ServerSettings     = Field(default_factory=ServerSettings)
    slack:      SlackSettings      = Field(default_factory=SlackSettings)
    aws:        AwsSettings        = Field(default_factory=AwsSettings)
    access:     AccessSettings     = Field(default_factory=AccessSettings)
    log:        LogSettings        = Field(default_factory=LogSettings)
    auth:       AuthSettings       = Field(default_factory=AuthSettings)
    database:   DatabaseSettings   = Field(default_factory=DatabaseSettings)
    controller: ControllerSettings = Field(default_factory=ControllerSettings)
    sweeper:    SweeperSettings    = Field(default_factory=SweeperSettings)
    clusters:   list[ClusterSeed]  = Field(default_factory=list)

    @model_validator(mode="after")
    def _require_slack_secrets(self) -> "JitSettings":
        if not self.slack.token:
            raise ValueError("slack.token is required")
        if not self.slack.signing_secret:
            raise ValueError("slack.signingSecret is required")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            cls._yaml_settings_source,
            file_secret_settings,
        )

    @staticmethod
    def _yaml_settings_source(settings_cls=None) -> Dict[str, Any]:
        for path in JitSettings._resolve_candidate_paths():
            data = JitSettings._load_file(path)
            if data is not None:
                return data
        return {}

    @staticmethod
    def _resolve_candidate_paths() -> Iterable[Path]:
        explicit = os.getenv("JIT_CONFIG")
        if explicit:
            path = Path(explicit).expanduser()
            if not path.is_file():
                raise FatalConfigError(f"config file {path} does not exist")
            yield path
            return
        yield from DEFAULT_CONFIG_LOCATIONS

    @staticmethod
    def _load_file(path: Path) -> Optional[Dict[str, Any]]:
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle)
        except OSError as exc:
            raise FatalConfigError(f"failed to read config file {path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise FatalConfigError(f"invalid config file {path}: {exc}") from exc

        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise FatalConfigError(f"config file {path} must contain a mapping at top level")
        return _snake_case_sections(raw)


def load_settings(**overrides: Any) -> JitSettings:
    """Build settings, converting validation problems into FatalConfigError."""
    try:
        return JitSettings(**overrides)
    except ValidationError as exc:
        raise FatalConfigError(f"invalid configuration: {exc}") from exc


@lru_cache()
def get_settings() -> JitSettings:
    """Return memoized settings for the running process."""
    return load_settings()

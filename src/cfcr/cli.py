#!/usr/bin/env python3
"""cf-cert-renewer - Cloudflare certificate validation records, published elsewhere

Keeps the DNS validation TXT records of Cloudflare certificate packs in sync
with an external authoritative DNS provider, so that certificates whose zones
are not hosted on Cloudflare DNS can still be issued and renewed.

On every tick, each configured domain is reconciled independently:

    active                   -> remove stale _acme-challenge TXT records
    validation_timed_out     -> restart validation, then handle as pending
    pending_validation,
    initializing             -> publish the validation TXT records if they are
                                not already present at the DNS provider

Supported DNS Providers:
    - ovh: OVH DNS zones
    (more coming soon)

Configuration is read from YAML. CONFIG_PATH may point to a single file or to a
directory, in which case every *.yaml / *.yml file (except *.template) is
merged in name order, later files winning:

    logging:
      level: info                  debug, info, warning, error, critical
      human_readable: true         false switches to key=value lines
    auth:
      cloudflare:
        token: "..."               API token with SSL and Certificates edit
      ovh:
        endpoint: ovh-eu
        app_key: "..."
        app_secret: "..."
        consumer_key: "..."
    checks:
      base_domain: example.com     DNS zone hosted at the DNS provider
      frequency: hourly            debug (1m), hourly, daily, weekly, monthly
      domains:
        - example.com
        - www.example.com
      dry_run: false
      strictness: existence        existence | values
      timeout_seconds: 30
    metrics:
      enabled: false
      server:
        address: 0.0.0.0
        port: 9090

Environment variables:

    CONFIG_PATH        Config file or directory (default: /config)
    SYNC_MODE          "once" or "watch" (polling loop) (default: watch)
    DRY_RUN            Log mutations instead of performing them (default: false)
    LOG_LEVEL          Overrides logging.level from the config file
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import ovh
import requests
import yaml
from ovh.exceptions import APIError
from prometheus_client import CollectorRegistry, Gauge, start_http_server

# =============================================================================
# Runtime Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config")
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
DRY_RUN = os.getenv("DRY_RUN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "")

ACME_CHALLENGE_LABEL = "_acme-challenge"

FREQUENCIES: Dict[str, int] = {
    "debug": 60,
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
}

LOG_LEVELS: Dict[str, int] = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

HUMAN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
MACHINE_LOG_FORMAT = "time=%(asctime)s level=%(levelname)s logger=%(name)s msg=%(message)r"

logger = logging.getLogger("cfcr")

# =============================================================================
# Errors
# =============================================================================


class CFCRError(Exception):
    """Base class for all errors raised by cf-cert-renewer."""


class ConfigError(CFCRError):
    """Configuration could not be loaded."""


class EdgeAPIError(CFCRError):
    """Recoverable edge provider failure; the domain is skipped for this tick."""


class NoResultError(EdgeAPIError):
    """The edge provider answered, but with an empty result list."""


class UnknownStatusError(EdgeAPIError):
    """The certificate pack status is outside the known vocabulary."""


class EmptyResponseError(CFCRError):
    """The edge provider returned no result set at all.

    Cloudflare answers this way when the token is invalid, so this is treated
    as fatal: every other domain would silently no-op as well.
    """


class AuthenticationError(EmptyResponseError):
    """The edge provider rejected the credentials."""


class DNSProviderError(CFCRError):
    """A DNS provider call failed."""


# =============================================================================
# Enums
# =============================================================================


class CertificateStatus(Enum):
    """Certificate pack lifecycle status, as reported by the edge provider."""

    INITIALIZING = "initializing"
    PENDING_VALIDATION = "pending_validation"
    ACTIVE = "active"
    VALIDATION_TIMED_OUT = "validation_timed_out"


class Strictness(Enum):
    """How the reconciler decides that validation records are already published.

    EXISTENCE: any TXT record at the validation subdomain counts as published.
    VALUES:    every desired value must be present among the published records.
    """

    EXISTENCE = "existence"
    VALUES = "values"


class RecordAction(Enum):
    CREATE = "create"
    UPDATE = "update"


class ReconcileOutcome(Enum):
    """What a single domain reconciliation ended up doing."""

    CLEANED = "cleaned"
    NOT_NEEDED = "not_needed"
    ALREADY_PUBLISHED = "already_published"
    PUBLISHED = "published"
    DRY_RUN = "dry_run"
    FAILED = "failed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ValidationRecord:
    """A TXT record the certificate authority expects to find."""

    name: str
    value: str
    status: str = ""


@dataclass(frozen=True)
class CertificatePack:
    """The edge provider's view of a domain's certificate."""

    id: str
    status: CertificateStatus
    validation_records: Tuple[ValidationRecord, ...] = ()


@dataclass(frozen=True)
class RecordChange:
    """One DNS provider call planned by the record-matching algorithm."""

    action: RecordAction
    value: str
    record_id: str = ""


@dataclass(frozen=True)
class Config:
    """Immutable configuration snapshot for a run."""

    base_domain: str
    domains: Tuple[str, ...]
    cloudflare_token: str
    frequency: str = "hourly"
    dry_run: bool = False
    strictness: str = Strictness.EXISTENCE.value
    timeout_seconds: float = 30.0
    log_level: str = "info"
    human_readable: bool = True
    ovh_endpoint: str = "ovh-eu"
    ovh_app_key: str = ""
    ovh_app_secret: str = ""
    ovh_consumer_key: str = ""
    metrics_enabled: bool = False
    metrics_address: str = "0.0.0.0"
    metrics_port: int = 9090


# =============================================================================
# Utility Functions
# =============================================================================


def derive_subdomain(domain: str, base_domain: str) -> str:
    """Return the validation subdomain of `domain`, relative to `base_domain`.

        example.com             -> _acme-challenge
        www.example.com         -> _acme-challenge.www
        www.staging.example.com -> _acme-challenge.www.staging
    """
    if domain == base_domain:
        return ACME_CHALLENGE_LABEL
    fqdn = f"{ACME_CHALLENGE_LABEL}.{domain}"
    suffix = f".{base_domain}"
    if fqdn.endswith(suffix):
        return fqdn[: -len(suffix)]
    return fqdn


def is_in_zone(domain: str, base_domain: str) -> bool:
    """Check that `domain` is the base domain or one of its subdomains."""
    return domain == base_domain or domain.endswith(f".{base_domain}")


def plan_record_changes(values: Sequence[str], record_ids: Sequence[str]) -> List[RecordChange]:
    """Map desired TXT values onto existing record IDs.

    Existing IDs are reused positionally. When there are more values than IDs,
    the missing records are created first with the leading values, and the
    existing IDs take the remaining ones. Surplus IDs are left untouched.
    """
    if len(values) <= len(record_ids):
        return [
            RecordChange(RecordAction.UPDATE, value, record_id)
            for record_id, value in zip(record_ids, values)
        ]

    num_to_create = len(values) - len(record_ids)
    changes = [RecordChange(RecordAction.CREATE, value) for value in values[:num_to_create]]
    changes.extend(
        RecordChange(RecordAction.UPDATE, value, record_id)
        for record_id, value in zip(record_ids, values[num_to_create:])
    )
    return changes


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _unquote_txt(value: str) -> str:
    """Strip the surrounding quotes some DNS providers add to TXT targets."""
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _error_messages(data: Dict[str, Any]) -> str:
    errors = data.get("errors") or []
    if not isinstance(errors, list):
        errors = [errors]
    return "; ".join(
        str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
    ) or "no error details"


# =============================================================================
# Logging Setup
# =============================================================================


class DomainLogAdapter(logging.LoggerAdapter):
    """Prefixes every message with the domain being reconciled."""

    def process(self, msg, kwargs):
        return f"[{self.extra['domain']}] {msg}", kwargs


def setup_logging(level: str, human_readable: bool = True) -> logging.Logger:
    """Configure the root handler and return the application logger."""
    numeric_level = LOG_LEVELS.get(level.lower().strip(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=HUMAN_LOG_FORMAT if human_readable else MACHINE_LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    app_logger = logging.getLogger("cfcr")
    app_logger.setLevel(numeric_level)
    return app_logger


# =============================================================================
# Configuration Loading
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all YAML config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        yaml_files = sorted(
            f for f in path.iterdir() if f.is_file() and f.suffix in (".yaml", ".yml")
        )
        return [str(f) for f in yaml_files]

    return []


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _section(data: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        value = data.get(key)
        data = value if isinstance(value, dict) else {}
    return data


def load_config(config_path: str) -> Config:
    """Load and merge YAML configuration files into a Config snapshot."""
    config_files = find_config_files(config_path)
    if not config_files:
        raise ConfigError(f"No configuration file found at {config_path}")

    data: Dict[str, Any] = {}
    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                content = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {config_file}: {e}") from e

        if content is None:
            continue
        if not isinstance(content, dict):
            raise ConfigError(f"Config file {config_file} must contain a mapping")
        logger.info(f"Configuration file found: {config_file}")
        data = _deep_merge(data, content)

    logging_cfg = _section(data, "logging")
    cloudflare = _section(data, "auth", "cloudflare")
    ovh_cfg = _section(data, "auth", "ovh")
    checks = _section(data, "checks")
    metrics = _section(data, "metrics")
    server = _section(metrics, "server")

    raw_domains = checks.get("domains") or []
    if not isinstance(raw_domains, list):
        raise ConfigError("checks.domains must be a list")
    domains = tuple(str(d).strip().lower() for d in raw_domains if str(d or "").strip())

    try:
        timeout_seconds = float(checks.get("timeout_seconds") or 30.0)
        metrics_port = int(server.get("port") or 9090)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric configuration value: {e}") from e

    return Config(
        base_domain=str(checks.get("base_domain") or "").strip().lower(),
        domains=domains,
        cloudflare_token=str(cloudflare.get("token") or "").strip(),
        frequency=str(checks.get("frequency") or "hourly").strip().lower(),
        dry_run=_parse_bool(checks.get("dry_run"), default=False),
        strictness=str(checks.get("strictness") or Strictness.EXISTENCE.value).strip().lower(),
        timeout_seconds=timeout_seconds,
        log_level=str(logging_cfg.get("level") or "info").strip().lower(),
        human_readable=_parse_bool(logging_cfg.get("human_readable"), default=True),
        ovh_endpoint=str(ovh_cfg.get("endpoint") or "ovh-eu").strip(),
        ovh_app_key=str(ovh_cfg.get("app_key") or "").strip(),
        ovh_app_secret=str(ovh_cfg.get("app_secret") or "").strip(),
        ovh_consumer_key=str(ovh_cfg.get("consumer_key") or "").strip(),
        metrics_enabled=_parse_bool(metrics.get("enabled"), default=False),
        metrics_address=str(server.get("address") or "0.0.0.0").strip(),
        metrics_port=metrics_port,
    )


def provider_to_use(config: Config) -> str:
    """Pick the DNS provider whose credentials are configured."""
    if config.ovh_app_key and config.ovh_app_secret and config.ovh_consumer_key:
        return "ovh"
    return "none"


def validate_config(config: Config) -> bool:
    """Validate configuration."""
    errors = []

    if config.log_level not in LOG_LEVELS:
        errors.append(f"Unknown log level '{config.log_level}'")

    if not config.cloudflare_token:
        errors.append("Cloudflare configuration is incomplete: missing auth.cloudflare.token")

    if config.frequency not in FREQUENCIES:
        errors.append(
            f"Frequency '{config.frequency}' is not supported. "
            f"Supported: {', '.join(FREQUENCIES)}"
        )

    if config.strictness not in {s.value for s in Strictness}:
        errors.append(
            f"Strictness '{config.strictness}' is not supported. "
            f"Supported: {', '.join(s.value for s in Strictness)}"
        )

    if config.timeout_seconds <= 0:
        errors.append("checks.timeout_seconds must be positive")

    if not config.base_domain:
        errors.append("checks.base_domain is required")
    else:
        for domain in config.domains:
            if not is_in_zone(domain, config.base_domain):
                errors.append(f"Domain '{domain}' is not part of base domain '{config.base_domain}'")

    if not config.domains:
        errors.append("At least one domain is required in checks.domains")

    if provider_to_use(config) == "none":
        errors.append(
            "No DNS provider configured "
            "(set auth.ovh.app_key, auth.ovh.app_secret and auth.ovh.consumer_key)"
        )

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


# =============================================================================
# Edge Provider Interfaces and Implementations
# =============================================================================


class CertificateStatusClient(ABC):
    """Reads certificate pack status from the edge provider."""

    @abstractmethod
    def get_zone_id(self, hostname: str) -> str:
        """Return the edge zone identifier of a hostname."""
        pass

    @abstractmethod
    def get_certificate_pack(self, zone_id: str) -> CertificatePack:
        """Return the certificate pack of a zone."""
        pass

    @abstractmethod
    def trigger_revalidation(self, zone_id: str, pack_id: str) -> None:
        """Ask the edge provider to restart validation of a certificate pack."""
        pass


class ValidationRecordSource(ABC):
    """Reads the TXT values the certificate authority currently expects."""

    @abstractmethod
    def get_validation_records(self, zone_id: str) -> List[ValidationRecord]:
        """Return validation records in the order the edge provider lists them."""
        pass


class CloudflareClient(CertificateStatusClient, ValidationRecordSource):
    """Cloudflare v4 API client for certificate packs."""

    BASE_URL = "https://api.cloudflare.com/client/v4"

    def __init__(
        self,
        token: str,
        *,
        timeout_seconds: float = 30.0,
        base_url: str = BASE_URL,
        logger: Optional[logging.Logger] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._logger = logger or logging.getLogger("cfcr")
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        self._logger.debug(f"Sending {method} on {url}")
        try:
            response = self._session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise EdgeAPIError(f"{method} {path} failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"{self.name} rejected the API token ({response.status_code}) on {method} {path}"
            )

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise EdgeAPIError(
                f"Non-JSON response ({response.status_code}) from {method} {path}"
            ) from e

        if not isinstance(data, dict):
            raise EdgeAPIError(
                f"Unexpected response format from {method} {path}: "
                f"expected object, got {type(data).__name__}"
            )

        if not 200 <= response.status_code < 300 or data.get("success") is False:
            raise EdgeAPIError(
                f"{method} {path} failed ({response.status_code}): {_error_messages(data)}"
            )
        return data

    def _first_result(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        data = self._request("GET", path, **kwargs)
        result = data.get("result")
        if result is None:
            raise EmptyResponseError(f"{self.name} returned nothing for {path}")
        if not isinstance(result, list):
            raise EdgeAPIError(
                f"Unexpected result format from {path}: expected list, got {type(result).__name__}"
            )
        if not result:
            raise NoResultError(f"{self.name} did not return any result for {path}")
        first = result[0]
        if not isinstance(first, dict):
            raise EdgeAPIError(f"Unexpected result entry from {path}: {first!r}")
        return first

    def _certificate_packs(self, zone_id: str) -> Dict[str, Any]:
        return self._first_result(
            f"/zones/{zone_id}/ssl/certificate_packs", params={"status": "all"}
        )

    def get_zone_id(self, hostname: str) -> str:
        zone = self._first_result("/zones", params={"name": hostname})
        zone_id = zone.get("id")
        if not isinstance(zone_id, str) or not zone_id:
            raise EdgeAPIError(f"Zone entry for {hostname} has no ID")
        return zone_id

    def get_certificate_pack(self, zone_id: str) -> CertificatePack:
        pack = self._certificate_packs(zone_id)
        raw_status = pack.get("status")
        try:
            status = CertificateStatus(raw_status)
        except ValueError:
            raise UnknownStatusError(
                f"Certificate pack status '{raw_status}' is unknown"
            ) from None
        return CertificatePack(
            id=str(pack.get("id") or ""),
            status=status,
            validation_records=tuple(self._parse_validation_records(pack)),
        )

    def get_validation_records(self, zone_id: str) -> List[ValidationRecord]:
        return self._parse_validation_records(self._certificate_packs(zone_id))

    def trigger_revalidation(self, zone_id: str, pack_id: str) -> None:
        path = f"/zones/{zone_id}/ssl/certificate_packs/{pack_id}"
        data = self._request("PATCH", path)

        if not data.get("success", False):
            raise EdgeAPIError(
                f"Failed to restart certificate pack validation: {_error_messages(data)}"
            )

        result = data.get("result")
        status = result.get("status") if isinstance(result, dict) else None
        if status != CertificateStatus.INITIALIZING.value:
            raise EdgeAPIError(
                f"Unexpected status after restarting validation, "
                f"expected: {CertificateStatus.INITIALIZING.value}, got: {status}"
            )

    def _parse_validation_records(self, pack: Dict[str, Any]) -> List[ValidationRecord]:
        raw_records = pack.get("validation_records") or []
        if not isinstance(raw_records, list):
            self._logger.warning(f"Ignoring malformed validation_records: {raw_records!r}")
            return []

        records = []
        for r in raw_records:
            name = r.get("txt_name") if isinstance(r, dict) else None
            value = r.get("txt_value") if isinstance(r, dict) else None
            if not isinstance(name, str) or not isinstance(value, str) or not value:
                self._logger.debug(f"Skipping non-TXT validation record: {r}")
                continue
            records.append(ValidationRecord(name=name, value=value, status=str(r.get("status") or "")))
        return records


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers hosting the validation records.

    Implementations only provide the primitive record calls; the matching of
    desired values onto existing records lives here so every provider shares it.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._logger = logger or logging.getLogger("cfcr")

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def list_record_ids(self, subdomain: str) -> List[str]:
        """List TXT record IDs of a subdomain, in provider order."""
        pass

    @abstractmethod
    def create_txt_record(self, subdomain: str, value: str) -> None:
        """Create a TXT record."""
        pass

    @abstractmethod
    def update_txt_record(self, record_id: str, subdomain: str, value: str) -> None:
        """Point an existing record at a new TXT value."""
        pass

    @abstractmethod
    def delete_record(self, record_id: str) -> None:
        """Delete a record."""
        pass

    @abstractmethod
    def get_record_value(self, record_id: str) -> str:
        """Return the TXT value of a record."""
        pass

    def apply_changes(self) -> None:
        """Make pending changes visible. Default implementation: nothing to do."""
        pass

    def records_exist(self, subdomain: str) -> bool:
        return bool(self.list_record_ids(subdomain))

    def list_txt_values(
        self, subdomain: str, record_ids: Optional[Sequence[str]] = None
    ) -> List[str]:
        if record_ids is None:
            record_ids = self.list_record_ids(subdomain)
        return [self.get_record_value(record_id) for record_id in record_ids]

    def sync_txt_records(
        self,
        subdomain: str,
        values: Sequence[str],
        record_ids: Optional[Sequence[str]] = None,
    ) -> List[RecordChange]:
        """Converge the subdomain's TXT records onto `values`.

        The first failing call aborts the remaining ones. Whatever was applied
        before it stays in place and is still made visible through
        `apply_changes`.
        """
        if record_ids is None:
            self._logger.info(f"Getting IDs for {subdomain} TXT records on {self.name}")
            record_ids = self.list_record_ids(subdomain)
        self._logger.debug(f"Got record IDs from {self.name}: {list(record_ids)}")

        changes = plan_record_changes(values, record_ids)
        num_to_create = sum(1 for c in changes if c.action == RecordAction.CREATE)
        if num_to_create:
            self._logger.debug(f"About to create {num_to_create} TXT record(s) for {subdomain}")

        applied = 0
        try:
            for change in changes:
                if change.action == RecordAction.CREATE:
                    self._logger.info(f"Creating {subdomain} TXT record with value {change.value}")
                    self.create_txt_record(subdomain, change.value)
                else:
                    self._logger.info(
                        f"Updating {subdomain} (ID: {change.record_id}) with value {change.value}"
                    )
                    self.update_txt_record(change.record_id, subdomain, change.value)
                applied += 1
        finally:
            if applied:
                self.apply_changes()
        return changes

    def clean_txt_records(self, subdomain: str) -> int:
        """Delete every TXT record of a subdomain. Returns the number deleted."""
        record_ids = self.list_record_ids(subdomain)
        deleted = 0
        try:
            for record_id in record_ids:
                self._logger.info(f"Deleting {subdomain} TXT record (ID: {record_id})")
                self.delete_record(record_id)
                deleted += 1
        finally:
            if deleted:
                self.apply_changes()
        return deleted


class OVHDNSProvider(DNSProvider):
    """OVH DNS zone provider implementation."""

    TTL = 120

    def __init__(
        self,
        zone: str,
        *,
        endpoint: str,
        application_key: str,
        application_secret: str,
        consumer_key: str,
        timeout_seconds: float = 30.0,
        logger: Optional[logging.Logger] = None,
    ):
        super().__init__(logger)
        self._zone = zone
        self._client = ovh.Client(
            endpoint=endpoint,
            application_key=application_key,
            application_secret=application_secret,
            consumer_key=consumer_key,
            timeout=timeout_seconds,
        )

    @property
    def name(self) -> str:
        return "OVH"

    def _call(self, method: str, uri: str, **params: Any) -> Any:
        self._logger.debug(f"Sending {method.upper()} on {uri} with params {params}")
        try:
            return getattr(self._client, method)(uri, **params)
        except APIError as e:
            raise DNSProviderError(f"{self.name} {method.upper()} {uri} failed: {e}") from e

    def test_connection(self) -> bool:
        try:
            self._client.get(f"/domain/zone/{self._zone}")
            self._logger.info(f"{self.name} connection successful (zone {self._zone})")
            return True
        except APIError as e:
            self._logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def list_record_ids(self, subdomain: str) -> List[str]:
        ids = self._call(
            "get", f"/domain/zone/{self._zone}/record", fieldType="TXT", subDomain=subdomain
        )
        if not isinstance(ids, list):
            raise DNSProviderError(
                f"Unexpected response format from {self.name}: "
                f"expected list, got {type(ids).__name__}"
            )
        return [str(i) for i in ids]

    def create_txt_record(self, subdomain: str, value: str) -> None:
        self._call(
            "post",
            f"/domain/zone/{self._zone}/record",
            fieldType="TXT",
            subDomain=subdomain,
            target=value,
            ttl=self.TTL,
        )

    def update_txt_record(self, record_id: str, subdomain: str, value: str) -> None:
        self._call(
            "put",
            f"/domain/zone/{self._zone}/record/{record_id}",
            subDomain=subdomain,
            target=value,
            ttl=self.TTL,
        )

    def delete_record(self, record_id: str) -> None:
        self._call("delete", f"/domain/zone/{self._zone}/record/{record_id}")

    def get_record_value(self, record_id: str) -> str:
        record = self._call("get", f"/domain/zone/{self._zone}/record/{record_id}")
        target = record.get("target") if isinstance(record, dict) else None
        if not isinstance(target, str):
            raise DNSProviderError(f"{self.name} record {record_id} has no target")
        return _unquote_txt(target)

    def apply_changes(self) -> None:
        self._call("post", f"/domain/zone/{self._zone}/refresh")


# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider(config: Config, logger: Optional[logging.Logger] = None) -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    provider = provider_to_use(config)
    if provider == "ovh":
        return OVHDNSProvider(
            config.base_domain,
            endpoint=config.ovh_endpoint,
            application_key=config.ovh_app_key,
            application_secret=config.ovh_app_secret,
            consumer_key=config.ovh_consumer_key,
            timeout_seconds=config.timeout_seconds,
            logger=logger,
        )
    else:
        raise ValueError(f"Unsupported DNS provider: '{provider}'. Supported providers: ovh")


# =============================================================================
# Metrics
# =============================================================================


class MetricsServer:
    """Prometheus metrics exposed over HTTP."""

    def __init__(
        self,
        address: str = "0.0.0.0",
        port: int = 9090,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.address = address
        self.port = port
        self.registry = registry if registry is not None else CollectorRegistry()
        self.domains_watched = Gauge(
            "cfcr_domains_watched_total",
            "Number of domains watched by cfcr.",
            registry=self.registry,
        )
        self.last_updated = Gauge(
            "cfcr_last_updated_timestamp",
            "Last time the domain's TXT records have been updated.",
            ["domain"],
            registry=self.registry,
        )

    def start(self) -> None:
        start_http_server(self.port, addr=self.address, registry=self.registry)

    def set_watched_count(self, num: int) -> None:
        self.domains_watched.set(num)

    def set_last_updated(self, domain: str) -> None:
        self.last_updated.labels(domain=domain).set_to_current_time()


# =============================================================================
# Core Reconciler
# =============================================================================


class DomainReconciler:
    """Decides and performs the side effect of one domain for one tick.

    Nothing is remembered between ticks: the certificate pack status read from
    the edge provider is the only input to the decision.
    """

    def __init__(
        self,
        *,
        status_client: CertificateStatusClient,
        record_source: ValidationRecordSource,
        dns_provider: DNSProvider,
        base_domain: str,
        dry_run: bool = False,
        strictness: Strictness = Strictness.EXISTENCE,
        metrics: Optional[MetricsServer] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.status_client = status_client
        self.record_source = record_source
        self.dns_provider = dns_provider
        self.base_domain = base_domain
        self.dry_run = dry_run
        self.strictness = strictness
        self.metrics = metrics
        self._logger = logger or logging.getLogger("cfcr")

    def reconcile(self, domain: str) -> ReconcileOutcome:
        """Reconcile one domain.

        Recoverable errors are logged and reported as FAILED. EmptyResponseError
        propagates: broken edge credentials make every other domain meaningless.
        """
        log = DomainLogAdapter(self._logger, {"domain": domain})
        try:
            return self._reconcile(domain, log)
        except EmptyResponseError as e:
            log.critical(f"Edge provider returned an empty response: {e}")
            raise
        except UnknownStatusError as e:
            log.error(f"Skipping domain this tick: {e}")
        except DNSProviderError as e:
            log.error(
                f"{self.dns_provider.name} call failed, records may be partially "
                f"applied until a later tick: {e}"
            )
        except CFCRError as e:
            log.error(f"Cannot reconcile domain: {e}")
        return ReconcileOutcome.FAILED

    def _reconcile(self, domain: str, log: DomainLogAdapter) -> ReconcileOutcome:
        subdomain = derive_subdomain(domain, self.base_domain)

        log.info("Getting zone ID on edge provider")
        zone_id = self.status_client.get_zone_id(domain)
        log.debug(f"Got zone ID: {zone_id}")

        log.info("Checking current certificate pack status")
        pack = self.status_client.get_certificate_pack(zone_id)
        log.debug(f"Certificate pack {pack.id} is {pack.status.value}")

        if pack.status == CertificateStatus.ACTIVE:
            return self._cleanup(subdomain, log)

        if pack.status == CertificateStatus.VALIDATION_TIMED_OUT:
            if self.dry_run:
                log.info(f"Dry-run: would restart validation of certificate pack {pack.id}")
            else:
                log.info(f"Validation timed out, restarting validation of certificate pack {pack.id}")
                self.status_client.trigger_revalidation(zone_id, pack.id)
        else:
            log.info("Certificate pack is pending for this domain")

        return self._publish(domain, zone_id, subdomain, log)

    def _cleanup(self, subdomain: str, log: DomainLogAdapter) -> ReconcileOutcome:
        log.info(f"Certificate pack is active, cleaning up {subdomain} TXT records")
        if self.dry_run:
            record_ids = self.dns_provider.list_record_ids(subdomain)
            log.info(f"Dry-run: would delete {len(record_ids)} TXT record(s): {record_ids}")
            return ReconcileOutcome.DRY_RUN

        deleted = self.dns_provider.clean_txt_records(subdomain)
        if deleted:
            log.info(f"Deleted {deleted} stale TXT record(s)")
        else:
            log.debug("No stale TXT records to delete")
        return ReconcileOutcome.CLEANED

    def _publish(
        self, domain: str, zone_id: str, subdomain: str, log: DomainLogAdapter
    ) -> ReconcileOutcome:
        log.info("Getting validation TXT records on edge provider")
        records = self.record_source.get_validation_records(zone_id)
        values = [r.value for r in records]
        log.debug(f"Got validation TXT values: {values}")

        # No validation records means the zone does not currently need a renewal.
        if not values:
            log.info("Edge provider did not return any TXT record to use, skipping")
            return ReconcileOutcome.NOT_NEEDED

        record_ids = self.dns_provider.list_record_ids(subdomain)
        if record_ids and self._already_published(subdomain, record_ids, values, log):
            log.info(
                "TXT records are already set but the certificate pack is still not "
                "renewed, nothing to do this tick"
            )
            return ReconcileOutcome.ALREADY_PUBLISHED

        if self.dry_run:
            changes = plan_record_changes(values, record_ids)
            for change in changes:
                target = f" (ID: {change.record_id})" if change.record_id else ""
                log.info(f"Dry-run: would {change.action.value} {subdomain}{target} with value {change.value}")
            return ReconcileOutcome.DRY_RUN

        self.dns_provider.sync_txt_records(subdomain, values, record_ids)

        if self.metrics is not None:
            log.debug("Updating timestamp in last updated metric")
            self.metrics.set_last_updated(domain)
        log.info("Domain records update completed")
        return ReconcileOutcome.PUBLISHED

    def _already_published(
        self,
        subdomain: str,
        record_ids: Sequence[str],
        values: Sequence[str],
        log: DomainLogAdapter,
    ) -> bool:
        if self.strictness == Strictness.EXISTENCE:
            return True

        published = self.dns_provider.list_txt_values(subdomain, record_ids)
        missing = Counter(values) - Counter(published)
        if missing:
            log.warning(
                f"{len(record_ids)} TXT record(s) exist but {sum(missing.values())} "
                f"validation value(s) are missing, republishing"
            )
            return False
        return True


# =============================================================================
# Reconciliation Driver
# =============================================================================


class ReconciliationDriver:
    """Runs the reconciler over every configured domain, one tick at a time."""

    def __init__(
        self,
        *,
        reconciler: DomainReconciler,
        domains: Sequence[str],
        logger: Optional[logging.Logger] = None,
    ):
        self.reconciler = reconciler
        self.domains = list(domains)
        self._logger = logger or logging.getLogger("cfcr")

    def run_once(self) -> Dict[str, ReconcileOutcome]:
        self._logger.info(f"Starting looping around {len(self.domains)} listed domain(s)")
        outcomes: Dict[str, ReconcileOutcome] = {}

        for domain in self.domains:
            try:
                outcomes[domain] = self.reconciler.reconcile(domain)
            except EmptyResponseError:
                raise
            except Exception as e:
                self._logger.error(f"Unexpected error while reconciling {domain}: {e}", exc_info=True)
                outcomes[domain] = ReconcileOutcome.FAILED

        counts = Counter(outcome.value for outcome in outcomes.values())
        summary = ", ".join(f"{count} {name}" for name, count in sorted(counts.items()))
        self._logger.info(f"Tick completed: {summary or 'no domains'}")
        return outcomes


# =============================================================================
# Main
# =============================================================================


def _handle_termination(signum, frame) -> None:
    logger.warning(f"Received signal {signal.Signals(signum).name}, exiting")
    sys.exit(1)


def run_forever(driver: ReconciliationDriver, interval_seconds: int) -> None:
    """Run a tick immediately, then every `interval_seconds`."""
    while True:
        driver.run_once()
        time.sleep(interval_seconds)


def main():
    """Main entry point."""
    signal.signal(signal.SIGINT, _handle_termination)
    signal.signal(signal.SIGTERM, _handle_termination)

    try:
        config = load_config(CONFIG_PATH)
    except ConfigError as e:
        setup_logging(LOG_LEVEL or "info")
        logger.error(f"Cannot load configuration: {e}")
        sys.exit(1)

    if LOG_LEVEL:
        config = replace(config, log_level=LOG_LEVEL.lower().strip())
    if _parse_bool(DRY_RUN, default=False):
        config = replace(config, dry_run=True)

    log = setup_logging(config.log_level, config.human_readable)

    if not validate_config(config):
        log.error("Configuration validation failed")
        sys.exit(1)

    dns_provider = create_dns_provider(config, log)
    edge_client = CloudflareClient(
        config.cloudflare_token, timeout_seconds=config.timeout_seconds, logger=log
    )

    log.info(f"cf-cert-renewer: {edge_client.name} -> {dns_provider.name}")
    log.info(f"Found {len(config.domains)} domain(s) under {config.base_domain}")
    log.debug(f"Domains: {', '.join(config.domains)}")
    log.info(f"Checks frequency: {config.frequency}")
    log.info(f"Record strictness: {config.strictness}")
    log.info(f"Sync mode: {SYNC_MODE}")
    if config.dry_run:
        log.warning("Dry-run mode enabled: no DNS record or certificate pack will be modified")

    if not dns_provider.test_connection():
        log.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    metrics = None
    if config.metrics_enabled:
        metrics = MetricsServer(config.metrics_address, config.metrics_port)
        log.info(f"Starting metrics server on {config.metrics_address}:{config.metrics_port}")
        metrics.start()
        metrics.set_watched_count(len(config.domains))

    reconciler = DomainReconciler(
        status_client=edge_client,
        record_source=edge_client,
        dns_provider=dns_provider,
        base_domain=config.base_domain,
        dry_run=config.dry_run,
        strictness=Strictness(config.strictness),
        metrics=metrics,
        logger=log,
    )
    driver = ReconciliationDriver(reconciler=reconciler, domains=config.domains, logger=log)

    try:
        if SYNC_MODE == "once":
            driver.run_once()
            return

        if SYNC_MODE != "watch":
            log.error(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
            sys.exit(1)

        run_forever(driver, FREQUENCIES[config.frequency])

    except EmptyResponseError as e:
        log.critical(f"Edge credentials are presumed invalid, stopping: {e}")
        sys.exit(1)
    except Exception as e:
        log.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

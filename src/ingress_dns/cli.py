#!/usr/bin/env python3
"""ingress-dns - Ingress Load-Balancer DNS Synchronization

Keeps DNS records pointed at the load-balancer address of Kubernetes Ingress
resources, similar in spirit to Kubernetes external-dns. Ingresses are polled,
diffed against a local mirror and turned into add/update/delete events. When
the load-balancer address of an Ingress changes, every hostname it owns is
re-pointed (A record for IP literals, CNAME for hostnames), or withdrawn when
the address disappears.

Supported DNS Providers:
    - log: dry-run provider, logs every record change it is asked to make
    (more coming soon)

Supported Ingress Sources:
    - http: list Ingresses from a Kubernetes API endpoint (e.g. `kubectl proxy`)
    - file: read Ingress manifests from a YAML/JSON file or directory

Environment variables:

    Provider Selection:
        DNS_PROVIDER           DNS provider type: "log" (default: log)
        INGRESS_SOURCE         Ingress source type: "http" or "file" (default: http)

    Kubernetes API Source:
        INGRESS_API_URL        API server base URL (default: http://127.0.0.1:8001)
                               Point this at `kubectl proxy` so that the proxy owns
                               cluster credentials.
        INGRESS_API_TOKEN      Pre-provisioned bearer token (optional)
        INGRESS_VERIFY_TLS     Verify the API server certificate (default: true)
        INGRESS_NAMESPACE      Only watch this namespace (default: all namespaces)

    File Source:
        INGRESS_FILE_PATH      File or directory holding Ingress manifests, as written
                               by `kubectl get ingress -A -o yaml` (default:
                               /config/ingresses.yaml). Directories are scanned for
                               *.yaml, *.yml and *.json files.

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode (default: 30)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        WORKERS                Worker threads; events for one Ingress always run
                               on the same worker (default: 4)
        RECONCILE_RETRIES      Retries for a failed reconciliation (default: 3)
        RETRY_DELAY_SECONDS    Delay between retries (default: 2)

    Reconciliation:
        RESOLVE_PROBE          Look up CNAME targets and log whether they resolve.
                               Never changes the record type (default: true)
        RECONCILE_ON_ADD       Treat a newly seen Ingress as an address change from
                               nothing. When false (default), records are only written
                               once an Ingress's address changes after it was first seen.

    Domain exclusions:
        INGRESS_DNS_EXCLUDE_DOMAINS  Comma-separated patterns for hostnames to leave alone.
                                     Supports three formats:
                                       - Exact domain: "auth.example.com"
                                       - Wildcard (fnmatch-style): "*.internal.*", "dev-*"
                                       - Regex (prefix with ~): "~^staging-\\d+\\.example\\.com$"
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import os
import queue
import re
import socket
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import requests
import yaml

# =============================================================================
# Configuration
# =============================================================================

# Provider selection
DNS_PROVIDER = os.getenv("DNS_PROVIDER", "log").lower().strip()
INGRESS_SOURCE = os.getenv("INGRESS_SOURCE", "http").lower().strip()

# Kubernetes API source configuration
INGRESS_API_URL = os.getenv("INGRESS_API_URL", "http://127.0.0.1:8001")
INGRESS_API_TOKEN = os.getenv("INGRESS_API_TOKEN", "")
INGRESS_VERIFY_TLS = os.getenv("INGRESS_VERIFY_TLS", "true")
INGRESS_NAMESPACE = os.getenv("INGRESS_NAMESPACE", "").strip()

# File source configuration
INGRESS_FILE_PATH = os.getenv("INGRESS_FILE_PATH", "/config/ingresses.yaml")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch")
POLL_INTERVAL_SECONDS = int(os.getenv("POLL_INTERVAL_SECONDS", "30"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
WORKERS = int(os.getenv("WORKERS", "4"))
RECONCILE_RETRIES = int(os.getenv("RECONCILE_RETRIES", "3"))
RETRY_DELAY_SECONDS = float(os.getenv("RETRY_DELAY_SECONDS", "2"))

# Reconciliation behaviour
RESOLVE_PROBE = os.getenv("RESOLVE_PROBE", "true")
RECONCILE_ON_ADD = os.getenv("RECONCILE_ON_ADD", "false")

# Exclusions
INGRESS_DNS_EXCLUDE_DOMAINS = os.getenv("INGRESS_DNS_EXCLUDE_DOMAINS", "")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class RecordType(Enum):
    """DNS record type for a load-balancer address.

    A:          The address is an IPv4 or IPv6 literal.
    CNAME:      The address is a hostname, whether or not it resolves yet.
    UNRESOLVED: There is no address; nothing can be written.
    """

    A = "A"
    CNAME = "CNAME"
    UNRESOLVED = "unresolved"


class ChangeAction(Enum):
    UPSERT = "upsert"
    WITHDRAW = "withdraw"


class EventKind(Enum):
    """Kinds of events delivered by an ingress source."""

    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"
    SYNCED = "synced"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ResourceIdentity:
    """Namespace and name of an Ingress, stable across its lifetime."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class LoadBalancerEntry:
    """One entry of an Ingress's status.loadBalancer.ingress list."""

    ip: str = ""
    hostname: str = ""


@dataclass(frozen=True)
class IngressSnapshot:
    """Immutable view of an Ingress at the time it was observed."""

    identity: ResourceIdentity
    tls_hosts: Tuple[str, ...] = ()
    rule_hosts: Tuple[str, ...] = ()
    load_balancer: Tuple[LoadBalancerEntry, ...] = ()

    @property
    def observed_address(self) -> Optional[str]:
        return extract_address(self)

    def describe(self) -> str:
        """Render the snapshot as JSON for debug logging."""
        return json.dumps(asdict(self), sort_keys=True)


@dataclass(frozen=True)
class ReconciliationRecord:
    """A single record change requested from the DNS provider."""

    action: ChangeAction
    hostname: str
    target: Optional[str] = None
    record_type: RecordType = RecordType.UNRESOLVED


@dataclass(frozen=True)
class ResourceEvent:
    """Change notification for one Ingress.

    ADDED carries ``new``, UPDATED carries ``old`` and ``new``, DELETED carries
    the last known snapshot in ``old``. SYNCED carries nothing and marks the end
    of the initial listing.
    """

    kind: EventKind
    old: Optional[IngressSnapshot] = None
    new: Optional[IngressSnapshot] = None

    @classmethod
    def added(cls, snapshot: IngressSnapshot) -> "ResourceEvent":
        return cls(EventKind.ADDED, new=snapshot)

    @classmethod
    def updated(cls, old: IngressSnapshot, new: IngressSnapshot) -> "ResourceEvent":
        return cls(EventKind.UPDATED, old=old, new=new)

    @classmethod
    def deleted(cls, snapshot: IngressSnapshot) -> "ResourceEvent":
        return cls(EventKind.DELETED, old=snapshot)

    @classmethod
    def synced(cls) -> "ResourceEvent":
        return cls(EventKind.SYNCED)

    @property
    def identity(self) -> Optional[ResourceIdentity]:
        snapshot = self.new or self.old
        return snapshot.identity if snapshot else None


# =============================================================================
# Errors
# =============================================================================


class IngressSourceError(Exception):
    """Raised when an ingress source cannot produce a complete listing."""


class ReconcileError(Exception):
    """Raised when the DNS provider rejected one or more record changes."""

    def __init__(self, identity: Optional[ResourceIdentity], failed: List[ReconciliationRecord]):
        self.identity = identity
        self.failed = failed
        hostnames = ", ".join(f"{r.action.value} {r.hostname}" for r in failed)
        super().__init__(f"Ingress {identity}: {len(failed)} record change(s) failed ({hostnames})")


# =============================================================================
# Reconciliation Logic
# =============================================================================

HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}\.?\Z)"
    r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?\Z"
)


def _is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def derive_hostnames(snapshot: IngressSnapshot) -> List[str]:
    """Return the hostnames an Ingress owns.

    TLS hosts win as a whole: rule hosts are only used when no TLS hosts are
    declared. Order and duplicates are preserved.
    """
    if snapshot.tls_hosts:
        return list(snapshot.tls_hosts)
    return list(snapshot.rule_hosts)


def extract_address(snapshot: IngressSnapshot) -> Optional[str]:
    """Return the load-balancer address hostnames should point at.

    The first entry with a hostname wins; otherwise the first entry with an IP.
    Malformed values are logged and treated as absent.
    """
    for entry in snapshot.load_balancer:
        if not entry.hostname:
            continue
        if _is_ip_literal(entry.hostname) or HOSTNAME_RE.fullmatch(entry.hostname):
            return entry.hostname
        logger.warning(
            f"Ingress {snapshot.identity}: ignoring malformed load-balancer hostname "
            f"{entry.hostname!r}"
        )

    for entry in snapshot.load_balancer:
        if not entry.ip:
            continue
        if _is_ip_literal(entry.ip):
            return entry.ip
        logger.warning(
            f"Ingress {snapshot.identity}: ignoring malformed load-balancer IP {entry.ip!r}"
        )

    return None


def address_changed(old_address: Optional[str], new_address: Optional[str]) -> bool:
    """Check whether a reconciliation is required. Empty strings count as no address."""
    return (old_address or None) != (new_address or None)


def probe_hostname(hostname: str) -> bool:
    """Best-effort forward lookup of a CNAME target, for logging only."""
    try:
        infos = socket.getaddrinfo(hostname, None)
    except (OSError, UnicodeError) as e:
        logger.warning(f"CNAME target '{hostname}' does not resolve (yet): {e}")
        return False

    addresses = sorted({str(info[4][0]) for info in infos})
    logger.debug(f"CNAME target '{hostname}' resolves to {', '.join(addresses)}")
    return True


def resolve_record_type(address: Optional[str], *, probe: bool = True) -> RecordType:
    """Classify an address as an A record target, a CNAME target or unresolved.

    The record type depends only on the syntax of the address. A hostname that
    does not resolve yet (e.g. a freshly provisioned load balancer) is still a
    CNAME target.
    """
    if not address:
        return RecordType.UNRESOLVED
    if _is_ip_literal(address):
        return RecordType.A
    if probe:
        probe_hostname(address)
    return RecordType.CNAME


# =============================================================================
# Manifest Parsing
# =============================================================================


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _host_list(values: List[Any]) -> List[str]:
    return [str(v) for v in values if isinstance(v, str) and v]


def _lb_field(identity: ResourceIdentity, field_name: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    logger.warning(f"Ingress {identity}: ignoring non-string load-balancer {field_name} {value!r}")
    return ""


def parse_ingress(manifest: Any) -> Optional[IngressSnapshot]:
    """Build a snapshot from a networking.k8s.io/v1 Ingress manifest.

    Returns None for manifests that cannot identify an Ingress. Rules without a
    host (catch-all rules) own no hostname and are skipped.
    """
    if not isinstance(manifest, dict):
        logger.warning(f"Skipping malformed ingress manifest: {manifest!r}")
        return None

    metadata = _as_dict(manifest.get("metadata"))
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        logger.warning("Skipping ingress manifest without metadata.name")
        return None
    namespace = metadata.get("namespace")
    if not isinstance(namespace, str) or not namespace:
        namespace = "default"
    identity = ResourceIdentity(namespace=namespace, name=name)

    spec = _as_dict(manifest.get("spec"))
    tls_hosts: List[str] = []
    for tls in _as_list(spec.get("tls")):
        tls_hosts.extend(_host_list(_as_list(_as_dict(tls).get("hosts"))))
    rule_hosts = _host_list([_as_dict(rule).get("host") for rule in _as_list(spec.get("rules"))])

    status = _as_dict(manifest.get("status"))
    entries: List[LoadBalancerEntry] = []
    for item in _as_list(_as_dict(status.get("loadBalancer")).get("ingress")):
        if not isinstance(item, dict):
            logger.warning(f"Ingress {identity}: skipping malformed load-balancer entry {item!r}")
            continue
        entries.append(
            LoadBalancerEntry(
                ip=_lb_field(identity, "ip", item.get("ip")),
                hostname=_lb_field(identity, "hostname", item.get("hostname")),
            )
        )

    return IngressSnapshot(
        identity=identity,
        tls_hosts=tuple(tls_hosts),
        rule_hosts=tuple(rule_hosts),
        load_balancer=tuple(entries),
    )


def _manifest_items(document: Any) -> List[Any]:
    """Flatten a YAML/JSON document into individual Ingress manifests."""
    if document is None:
        return []
    if isinstance(document, list):
        items = document
    elif isinstance(document, dict) and isinstance(document.get("items"), list):
        items = document["items"]
    else:
        items = [document]

    manifests: List[Any] = []
    for item in items:
        kind = item.get("kind") if isinstance(item, dict) else None
        if kind and kind != "Ingress":
            logger.debug(f"Skipping non-Ingress manifest of kind '{kind}'")
            continue
        manifests.append(item)
    return manifests


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Both mutations must be idempotent and report success per call.
    """

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
    def upsert(self, hostname: str, target: str, record_type: RecordType) -> bool:
        """Create or replace the record for hostname."""
        pass

    @abstractmethod
    def withdraw(self, hostname: str) -> bool:
        """Remove the record for hostname."""
        pass


class LoggingDNSProvider(DNSProvider):
    """Dry-run DNS provider that logs record changes instead of applying them."""

    @property
    def name(self) -> str:
        return "Log (dry-run)"

    def test_connection(self) -> bool:
        logger.info(f"{self.name}: no records will be changed")
        return True

    def upsert(self, hostname: str, target: str, record_type: RecordType) -> bool:
        logger.info(f"Update DNS {record_type.value} record for {hostname} to {target}")
        return True

    def withdraw(self, hostname: str) -> bool:
        logger.info(f"Withdraw DNS record for {hostname}")
        return True


# =============================================================================
# Ingress Source Interface and Implementations
# =============================================================================


class IngressSource(ABC):
    """Abstract base class for ingress sources.

    Subclasses return full listings; this class mirrors the last good listing
    and turns the difference into events.
    """

    def __init__(self) -> None:
        self._mirror: Dict[ResourceIdentity, IngressSnapshot] = {}
        self._synced = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_ingresses(self) -> List[Any]:
        """Return every Ingress manifest, or raise IngressSourceError."""
        pass

    def events(self) -> Iterator[ResourceEvent]:
        """Yield the events since the previous listing.

        A failed listing yields nothing and keeps the mirror, so an outage never
        looks like every Ingress being deleted.
        """
        try:
            manifests = self.list_ingresses()
        except IngressSourceError as e:
            logger.warning(
                f"{self.name} unavailable, keeping {len(self._mirror)} known ingress(es): {e}"
            )
            return

        current: Dict[ResourceIdentity, IngressSnapshot] = {}
        for manifest in manifests:
            snapshot = parse_ingress(manifest)
            if snapshot is None:
                continue
            if snapshot.identity in current:
                logger.warning(f"Duplicate ingress {snapshot.identity}; using the last one listed")
            current[snapshot.identity] = snapshot

        previous = self._mirror
        self._mirror = current

        for identity, snapshot in current.items():
            old = previous.get(identity)
            if old is None:
                yield ResourceEvent.added(snapshot)
            elif old != snapshot:
                yield ResourceEvent.updated(old, snapshot)

        for identity, snapshot in previous.items():
            if identity not in current:
                yield ResourceEvent.deleted(snapshot)

        if not self._synced:
            self._synced = True
            yield ResourceEvent.synced()


class KubernetesIngressSource(IngressSource):
    """Lists networking.k8s.io/v1 Ingresses from a Kubernetes API endpoint."""

    API_PATH = "/apis/networking.k8s.io/v1"
    PAGE_SIZE = 500

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        namespace: str = "",
        verify_tls: bool = True,
        timeout_seconds: float = 10.0,
    ):
        super().__init__()
        self._url = url.rstrip("/")
        self._namespace = namespace
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.verify = verify_tls
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    @property
    def name(self) -> str:
        return "Kubernetes API"

    def list_url(self) -> str:
        if self._namespace:
            return f"{self._url}{self.API_PATH}/namespaces/{self._namespace}/ingresses"
        return f"{self._url}{self.API_PATH}/ingresses"

    def list_ingresses(self) -> List[Any]:
        url = self.list_url()
        items: List[Any] = []
        continue_token = ""

        while True:
            params: Dict[str, Any] = {"limit": self.PAGE_SIZE}
            if continue_token:
                params["continue"] = continue_token
            try:
                response = self._session.get(url, params=params, timeout=self._timeout)
                response.raise_for_status()
                data = response.json()
            except (requests.exceptions.RequestException, json.JSONDecodeError) as e:
                raise IngressSourceError(f"Failed to list ingresses from {url}: {e}") from e

            if not isinstance(data, dict) or not isinstance(data.get("items"), list):
                raise IngressSourceError(
                    f"Unexpected response format from {url}: expected an IngressList, "
                    f"got {type(data).__name__}"
                )

            items.extend(data["items"])
            continue_token = str(_as_dict(data.get("metadata")).get("continue") or "")
            if not continue_token:
                return items


class FileIngressSource(IngressSource):
    """Reads Ingress manifests from a YAML/JSON file or a directory of them."""

    def __init__(self, path: str):
        super().__init__()
        self._path = path

    @property
    def name(self) -> str:
        return f"Ingress file source ({self._path})"

    def list_ingresses(self) -> List[Any]:
        files = find_config_files(self._path)
        if not files:
            raise IngressSourceError(f"No ingress manifests found at {self._path}")

        manifests: List[Any] = []
        for manifest_file in files:
            try:
                with open(manifest_file, "r", encoding="utf-8") as f:
                    documents = list(yaml.safe_load_all(f))
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
                raise IngressSourceError(f"Failed to read {manifest_file}: {e}") from e

            for document in documents:
                manifests.extend(_manifest_items(document))
        return manifests


# =============================================================================
# Provider Registry
# =============================================================================


def create_dns_provider() -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    if DNS_PROVIDER == "log":
        return LoggingDNSProvider()
    else:
        raise ValueError(f"Unsupported DNS provider: '{DNS_PROVIDER}'. Supported providers: log")


def create_ingress_source() -> IngressSource:
    """Factory function to create the configured ingress source."""
    if INGRESS_SOURCE == "http":
        return KubernetesIngressSource(
            INGRESS_API_URL,
            token=INGRESS_API_TOKEN,
            namespace=INGRESS_NAMESPACE,
            verify_tls=_parse_bool(INGRESS_VERIFY_TLS, default=True),
        )
    elif INGRESS_SOURCE == "file":
        return FileIngressSource(INGRESS_FILE_PATH)
    else:
        raise ValueError(
            f"Unsupported ingress source: '{INGRESS_SOURCE}'. Supported sources: http, file"
        )


# =============================================================================
# Utility Functions
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Find all manifest files in directory or return single file.

    Args:
        config_path: Path to a manifest file or directory

    Returns:
        Sorted list of *.yaml, *.yml and *.json files (excluding .template files)
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        found = [f for f in path.iterdir() if f.is_file() and f.suffix in {".yaml", ".yml", ".json"}]
        return [str(f) for f in sorted(found) if not f.name.endswith(".template")]

    # Path doesn't exist yet
    return []


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_exclude_patterns(value: str) -> List[re.Pattern]:
    """Parse hostname exclusion patterns from env var."""
    patterns: List[re.Pattern] = []
    if not value:
        return patterns

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue

        try:
            if item.startswith("~"):
                # Explicit regex pattern
                patterns.append(re.compile(item[1:], re.IGNORECASE))
            elif "*" in item or "?" in item:
                # Wildcard pattern - convert fnmatch to regex
                regex_str = re.escape(item)
                regex_str = regex_str.replace(r"\*", ".*").replace(r"\?", ".")
                patterns.append(re.compile(f"^{regex_str}$", re.IGNORECASE))
            else:
                patterns.append(re.compile(f"^{re.escape(item)}$", re.IGNORECASE))
            logger.debug(f"Added exclusion pattern: {item}")
        except re.error as e:
            logger.warning(f"Invalid exclusion pattern '{item}': {e}")

    return patterns


def _is_domain_excluded(domain: str, patterns: List[re.Pattern]) -> bool:
    """Check if a domain matches any exclusion pattern."""
    for pattern in patterns:
        if pattern.search(domain):
            return True
    return False


# =============================================================================
# Core Synchronizer
# =============================================================================


class IngressDNSSynchronizer:
    """Turns ingress events into DNS record changes.

    Planning is a pure function of the event, so replaying an event (after a
    restart or a re-list) plans and applies the same changes again.
    """

    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        exclude_patterns: Optional[List[re.Pattern]] = None,
        resolve_probe: bool = True,
        reconcile_on_add: bool = False,
    ):
        self.dns_provider = dns_provider
        self.exclude_patterns = exclude_patterns or []
        self.resolve_probe = resolve_probe
        self.reconcile_on_add = reconcile_on_add
        self.initial_sync_done = False
        self._planners: Dict[EventKind, Callable[[ResourceEvent], List[ReconciliationRecord]]] = {
            EventKind.ADDED: self._plan_added,
            EventKind.UPDATED: self._plan_updated,
            EventKind.DELETED: self._plan_deleted,
            EventKind.SYNCED: self._plan_synced,
        }

    def handle(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        """Plan and apply the record changes for one event.

        Raises ReconcileError if the provider rejected any change; the others
        are still attempted.
        """
        records = self.plan(event)
        self.apply(event.identity, records)
        return records

    def plan(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        return self._planners[event.kind](event)

    def plan_update(
        self, old: Optional[IngressSnapshot], new: IngressSnapshot
    ) -> List[ReconciliationRecord]:
        old_address = extract_address(old) if old is not None else None
        new_address = extract_address(new)

        if not address_changed(old_address, new_address):
            logger.debug(f"Ingress {new.identity} address unchanged ({new_address or 'none'})")
            return []

        logger.info(
            f"Ingress {new.identity} updated from {old_address or 'none'} to {new_address or 'none'}"
        )
        hostnames = self._owned_hostnames(new)

        if new_address is None:
            return [ReconciliationRecord(ChangeAction.WITHDRAW, hostname) for hostname in hostnames]

        record_type = resolve_record_type(new_address, probe=self.resolve_probe)
        return [
            ReconciliationRecord(ChangeAction.UPSERT, hostname, new_address, record_type)
            for hostname in hostnames
        ]

    def plan_delete(self, last: IngressSnapshot) -> List[ReconciliationRecord]:
        logger.info(f"Ingress {last.identity} deleted")
        return [
            ReconciliationRecord(ChangeAction.WITHDRAW, hostname)
            for hostname in self._owned_hostnames(last)
        ]

    def apply(
        self, identity: Optional[ResourceIdentity], records: List[ReconciliationRecord]
    ) -> None:
        failed: List[ReconciliationRecord] = []
        for record in records:
            if record.action is ChangeAction.UPSERT:
                ok = self.dns_provider.upsert(
                    record.hostname, record.target or "", record.record_type
                )
            else:
                ok = self.dns_provider.withdraw(record.hostname)
            if not ok:
                logger.error(
                    f"{self.dns_provider.name} failed to {record.action.value} {record.hostname}"
                )
                failed.append(record)

        if failed:
            raise ReconcileError(identity, failed)

    def _owned_hostnames(self, snapshot: IngressSnapshot) -> List[str]:
        hostnames: List[str] = []
        for hostname in derive_hostnames(snapshot):
            if _is_domain_excluded(hostname, self.exclude_patterns):
                logger.debug(f"Excluding domain '{hostname}' (matches exclusion pattern)")
                continue
            hostnames.append(hostname)
        return hostnames

    def _plan_added(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        snapshot = event.new
        if snapshot is None:
            raise ValueError("added event without a snapshot")
        if self.reconcile_on_add:
            return self.plan_update(None, snapshot)

        message = (
            f"add ingress: {snapshot.identity} "
            f"hosts=[{', '.join(derive_hostnames(snapshot))}] "
            f"address={extract_address(snapshot) or 'none'}"
        )
        # Before the initial sync every existing Ingress shows up as an add.
        if self.initial_sync_done:
            logger.info(message)
        else:
            logger.debug(message)
        logger.debug(f"ingress {snapshot.identity}: {snapshot.describe()}")
        return []

    def _plan_updated(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        if event.old is None or event.new is None:
            raise ValueError("updated event needs both old and new snapshots")
        return self.plan_update(event.old, event.new)

    def _plan_deleted(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        if event.old is None:
            raise ValueError("deleted event without a last known snapshot")
        return self.plan_delete(event.old)

    def _plan_synced(self, event: ResourceEvent) -> List[ReconciliationRecord]:
        if not self.initial_sync_done:
            self.initial_sync_done = True
            logger.info("Initial ingress sync complete")
        return []


# =============================================================================
# Keyed Dispatch
# =============================================================================


class KeyedDispatcher:
    """Runs synchronizer work on a pool of workers keyed by Ingress identity.

    Each worker drains its own FIFO queue and an identity always hashes to the
    same worker, so events for one Ingress run in delivery order while
    unrelated Ingresses proceed in parallel. Failed reconciliations are retried
    here rather than in the synchronizer.
    """

    def __init__(
        self,
        synchronizer: IngressDNSSynchronizer,
        *,
        workers: int = 4,
        retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.synchronizer = synchronizer
        self._retries = max(0, retries)
        self._retry_delay = retry_delay
        self._queues: List["queue.Queue[Optional[ResourceEvent]]"] = [
            queue.Queue() for _ in range(max(1, workers))
        ]
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        for index, work_queue in enumerate(self._queues):
            thread = threading.Thread(
                target=self._run, args=(work_queue,), name=f"ingress-dns-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        """Finish queued work and stop the workers."""
        if not self._threads:
            return
        for work_queue in self._queues:
            work_queue.put(None)
        for thread in self._threads:
            thread.join()
        self._threads = []

    def join(self) -> None:
        """Block until every submitted event has been processed."""
        for work_queue in self._queues:
            work_queue.join()

    def worker_for(self, identity: ResourceIdentity) -> int:
        # hash() is salted per process; sha1 keeps the routing stable.
        digest = hashlib.sha1(str(identity).encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % len(self._queues)

    def submit(self, event: ResourceEvent) -> None:
        identity = event.identity
        if identity is None:
            # Identity-less events act as a barrier behind earlier work.
            self.join()
            self.process(event)
            return
        self._queues[self.worker_for(identity)].put(event)

    def process(self, event: ResourceEvent) -> bool:
        """Handle one event, retrying provider failures. Returns True on success."""
        attempts = self._retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self.synchronizer.handle(event)
                return True
            except ReconcileError as e:
                if attempt >= attempts:
                    logger.error(f"{e}; giving up after {attempt} attempt(s)")
                    return False
                logger.warning(
                    f"{e}; retrying in {self._retry_delay:g}s (attempt {attempt}/{attempts})"
                )
                time.sleep(self._retry_delay)
            except Exception as e:
                logger.error(
                    f"Unexpected error handling {event.kind.value} event for {event.identity}: {e}",
                    exc_info=True,
                )
                return False
        return False

    def _run(self, work_queue: "queue.Queue[Optional[ResourceEvent]]") -> None:
        while True:
            event = work_queue.get()
            try:
                if event is None:
                    return
                self.process(event)
            finally:
                work_queue.task_done()


def sync_once(source: IngressSource, dispatcher: KeyedDispatcher) -> int:
    """Poll the source once and wait for every resulting event to be handled."""
    count = 0
    for event in source.events():
        dispatcher.submit(event)
        count += 1
    dispatcher.join()
    if count:
        logger.debug(f"Processed {count} event(s) from {source.name}")
    return count


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if DNS_PROVIDER != "log":
        errors.append(f"Unsupported DNS_PROVIDER: {DNS_PROVIDER}. Supported: log")

    if INGRESS_SOURCE == "http":
        if not INGRESS_API_URL:
            errors.append("INGRESS_API_URL is required when INGRESS_SOURCE=http")
    elif INGRESS_SOURCE == "file":
        if not INGRESS_FILE_PATH:
            errors.append("INGRESS_FILE_PATH is required when INGRESS_SOURCE=file")
        elif not find_config_files(INGRESS_FILE_PATH):
            logger.warning(f"No ingress manifests at {INGRESS_FILE_PATH} yet; will keep polling")
    else:
        errors.append(f"Unsupported INGRESS_SOURCE: {INGRESS_SOURCE}. Supported: http, file")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")
    if WORKERS < 1:
        errors.append(f"WORKERS must be at least 1 (got {WORKERS})")
    if RECONCILE_RETRIES < 0:
        errors.append(f"RECONCILE_RETRIES must not be negative (got {RECONCILE_RETRIES})")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info(f"ingress-dns: {INGRESS_SOURCE} -> {DNS_PROVIDER}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    dns_provider = create_dns_provider()
    source = create_ingress_source()
    exclude_patterns = _parse_exclude_patterns(INGRESS_DNS_EXCLUDE_DOMAINS)
    reconcile_on_add = _parse_bool(RECONCILE_ON_ADD, default=False)

    logger.info(f"DNS Provider: {dns_provider.name}")
    logger.info(f"Ingress Source: {source.name}")
    logger.info(f"Sync mode: {SYNC_MODE}")
    if SYNC_MODE == "watch":
        logger.info(f"Poll interval: {POLL_INTERVAL_SECONDS}s")
    logger.info(f"Workers: {WORKERS}, retries: {RECONCILE_RETRIES}")
    if reconcile_on_add:
        logger.info("Reconciling newly seen ingresses immediately")
    if exclude_patterns:
        logger.info(f"Domain exclusions: {len(exclude_patterns)} pattern(s) configured")

    if not dns_provider.test_connection():
        logger.error(f"Cannot connect to {dns_provider.name}. Exiting.")
        sys.exit(1)

    synchronizer = IngressDNSSynchronizer(
        dns_provider=dns_provider,
        exclude_patterns=exclude_patterns,
        resolve_probe=_parse_bool(RESOLVE_PROBE, default=True),
        reconcile_on_add=reconcile_on_add,
    )
    dispatcher = KeyedDispatcher(
        synchronizer,
        workers=WORKERS,
        retries=RECONCILE_RETRIES,
        retry_delay=RETRY_DELAY_SECONDS,
    )
    dispatcher.start()

    try:
        if SYNC_MODE == "once":
            sync_once(source, dispatcher)
            return

        while True:
            sync_once(source, dispatcher)
            time.sleep(max(5, POLL_INTERVAL_SECONDS))

    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        dispatcher.stop()


if __name__ == "__main__":
    main()

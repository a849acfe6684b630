"""
STI Device Registry - Device identity resolution and auto-registration.

Maps an external device identifier (as seen on the wire) plus the broker it
arrived through to an internal device id and the site it is bound to.

Registry layout in Valkey:
- <prefix>:<broker>:<external_id> -> msgpack-packed DeviceRecord
- <prefix>:index                  -> set of internal device ids

Resolution order: in-process cache, registry lookup, auto-registration to the
default site (when configured). Resolution never raises.
"""

from __future__ import annotations

import threading
import typing
import uuid

import msgpack
import valkey
import valkey.exceptions

from sti_modules import sti_tools

if typing.TYPE_CHECKING:
    from sti_modules.ingest_stats import IngestStats
    from sti_modules.sti_tools import DeviceDescriptor, DeviceType


class DeviceIdentity(typing.NamedTuple):
    internal_id: str
    site_id: str


class DeviceRecord(typing.TypedDict):
    """Persisted device row."""

    id: str
    external_id: str
    broker: str
    site_id: str
    name: str
    model: str
    device_type: DeviceType
    mac_address: str | None
    status: str
    last_seen: str
    rssi_dbm: float | None
    auto_created: bool
    created_at: str


class DeviceRegistry(typing.Protocol):
    """Durable device store. Implementations raise valkey.exceptions.ValkeyError on I/O failure."""

    def find(self, external_id: str, broker: str) -> DeviceRecord | None:
        """Return the record for (external_id, broker) or None."""
        ...

    def insert(self, record: DeviceRecord) -> tuple[DeviceRecord, bool]:
        """Insert unless present. Returns (stored record, created)."""
        ...

    def touch(self, external_id: str, broker: str, fields: dict[str, typing.Any]) -> bool:
        """Merge fields into an existing record. Returns False if the record is gone."""
        ...


class ValkeyDeviceRegistry:
    """DeviceRegistry backed by one msgpack value per device plus an index set."""

    def __init__(self, r: valkey.Valkey, key_prefix: str) -> None:
        self.r: valkey.Valkey = r
        self.key_prefix: str = key_prefix

    def _key(self, external_id: str, broker: str) -> str:
        return f"{self.key_prefix}:{broker}:{external_id}"

    @property
    def index_key(self) -> str:
        return f"{self.key_prefix}:index"

    def find(self, external_id: str, broker: str) -> DeviceRecord | None:
        data = sti_tools.v_cast(self.r.get(self._key(external_id, broker)))
        if data is None:
            return None
        record: DeviceRecord = msgpack.unpackb(data, raw=False)
        return record

    def insert(self, record: DeviceRecord) -> tuple[DeviceRecord, bool]:
        key = self._key(record["external_id"], record["broker"])
        created = sti_tools.v_cast(self.r.set(key, msgpack.packb(record), nx=True))
        if created:
            self.r.sadd(self.index_key, record["id"])
            return record, True

        existing = self.find(record["external_id"], record["broker"])
        if existing is None:
            msg = f"device registry: record vanished after conflicting insert key={key}"
            raise valkey.exceptions.ValkeyError(msg)
        return existing, False

    def touch(self, external_id: str, broker: str, fields: dict[str, typing.Any]) -> bool:
        key = self._key(external_id, broker)
        existing = self.find(external_id, broker)
        if existing is None:
            return False
        merged = {**existing, **fields}
        return bool(sti_tools.v_cast(self.r.set(key, msgpack.packb(merged), xx=True)))

    def count(self) -> int:
        return int(sti_tools.v_cast(self.r.scard(self.index_key)))

    def ping(self) -> bool:
        return bool(sti_tools.v_cast(self.r.ping()))


def new_device_record(descriptor: DeviceDescriptor, site_id: str, now: str) -> DeviceRecord:
    """Build an auto-created record bound to site_id, named "<model> - <last 4 chars of external id>"."""
    external_id = descriptor["external_id"]
    return {
        "id": str(uuid.uuid4()),
        "external_id": external_id,
        "broker": descriptor["broker"],
        "site_id": site_id,
        "name": f"{descriptor['model']} - {external_id[-4:]}",
        "model": descriptor["model"],
        "device_type": descriptor["device_type"],
        "mac_address": descriptor["mac"],
        "status": "online",
        "last_seen": now,
        "rssi_dbm": descriptor["rssi"],
        "auto_created": True,
        "created_at": now,
    }


class DeviceIdentityCache:
    """
    Process-lifetime cache of (external_id, broker) -> DeviceIdentity.

    Entries are never evicted; invalidate() removes one explicitly.
    Known devices get their liveness fields refreshed in a short-lived
    background thread, which never affects resolution.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        stats: IngestStats,
        default_site_id: str,
        background_touch: bool = True,
    ) -> None:
        self.registry: DeviceRegistry = registry
        self.stats: IngestStats = stats
        self.default_site_id: str = default_site_id
        self.background_touch: bool = background_touch

        self._identities: dict[tuple[str, str], DeviceIdentity] = {}
        self._lock: threading.Lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._identities)

    def invalidate(self, external_id: str, broker: str) -> bool:
        """Drop one cached identity. Returns True if it was cached."""
        with self._lock:
            return self._identities.pop((external_id, broker), None) is not None

    def _remember(self, cache_key: tuple[str, str], record: DeviceRecord) -> DeviceIdentity:
        identity = DeviceIdentity(record["id"], record["site_id"])
        with self._lock:
            self._identities[cache_key] = identity
        return identity

    def resolve(self, descriptor: DeviceDescriptor) -> DeviceIdentity | None:
        """
        Resolve descriptor to an identity, registering it if unknown.

        Does not throw exceptions. Returns None when the device is unknown and
        no default site is configured, or when the registry is unreachable.
        """
        external_id = descriptor["external_id"]
        broker = descriptor["broker"]
        cache_key = (external_id, broker)

        with self._lock:
            identity = self._identities.get(cache_key)
        if identity is not None:
            return identity

        try:
            record = self.registry.find(external_id, broker)
            if record is not None:
                identity = self._remember(cache_key, record)
                self._start_touch(descriptor)
                return identity

            if not self.default_site_id:
                sti_tools.log_warning(
                    f"device: unknown device and no default site external_id={external_id} broker={broker}"
                )
                return None

            now = sti_tools.iso_instant(sti_tools.utc_now())
            record, created = self.registry.insert(new_device_record(descriptor, self.default_site_id, now))
            identity = self._remember(cache_key, record)

        except valkey.exceptions.ValkeyError as e:
            sti_tools.print_exception(e, f"device: registry error external_id={external_id} broker={broker}")
            self.stats.incr("device_errors")
            return None

        if created:
            self.stats.incr("devices_registered")
            sti_tools.log_result(
                f"device: registered external_id={external_id} broker={broker}"
                f" id={identity.internal_id} site_id={identity.site_id}"
            )
        else:
            sti_tools.log_diagnostic(f"device: registration race lost, using existing external_id={external_id}")
        return identity

    def _start_touch(self, descriptor: DeviceDescriptor) -> None:
        external_id = descriptor["external_id"]
        broker = descriptor["broker"]
        fields: dict[str, typing.Any] = {
            "last_seen": sti_tools.iso_instant(sti_tools.utc_now()),
            "status": "online",
            "model": descriptor["model"],
        }
        if descriptor["rssi"] is not None:
            fields["rssi_dbm"] = descriptor["rssi"]

        if not self.background_touch:
            self._touch(external_id, broker, fields)
            return

        threading.Thread(
            target=self._touch,
            args=(external_id, broker, fields),
            daemon=True,
            name=f"device-touch-{external_id}",
        ).start()

    def _touch(self, external_id: str, broker: str, fields: dict[str, typing.Any]) -> None:
        """
        Refresh liveness fields of a known device.

        Does not throw exceptions.
        """
        try:
            if not self.registry.touch(external_id, broker, fields):
                sti_tools.log_warning(f"device: touch found no record external_id={external_id} broker={broker}")
        except Exception as e:
            sti_tools.print_exception(e, f"device: touch failed external_id={external_id} broker={broker}")
        else:
            sti_tools.log_debug(f"device: touched external_id={external_id} fields={fields}")

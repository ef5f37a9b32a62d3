"""libvirt access for hostvm-provisioner.

Every call re-reads host state; nothing is cached between calls.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from provisioner.constants import LIBVIRT_URI
from provisioner.exceptions import HostError
from provisioner.models import SwitchDescriptor
from provisioner.network import classify_network_xml
from provisioner.utils import log


def _message(exc: "libvirt.libvirtError") -> str:
    message = exc.get_error_message() if hasattr(exc, "get_error_message") else None
    return message or str(exc)


class LibvirtHost:
    def __init__(self, uri: str = LIBVIRT_URI) -> None:
        self.uri = uri
        self.conn: Optional[libvirt.virConnect] = None

    def connect(self) -> None:
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to open libvirt connection to {self.uri}: {_message(exc)}") from exc
        if self.conn is None:
            raise HostError(f"Failed to open libvirt connection to {self.uri}")

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def _connection(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise HostError("libvirt connection not established")
        return self.conn

    def _domain(self, name: str) -> "libvirt.virDomain":
        try:
            return self._connection().lookupByName(name)
        except libvirt.libvirtError as exc:
            raise HostError(f"Domain {name} not found: {_message(exc)}") from exc

    # Networks

    def list_switches(self) -> List[SwitchDescriptor]:
        try:
            networks = self._connection().listAllNetworks(0)
            return [
                replace(classify_network_xml(net.XMLDesc(0)), active=bool(net.isActive()))
                for net in networks
            ]
        except libvirt.libvirtError as exc:
            raise HostError(_message(exc)) from exc

    def activate_switch(self, name: str) -> None:
        """Start a defined but stopped network and mark it for autostart."""
        try:
            network = self._connection().networkLookupByName(name)
            network.setAutostart(1)
            if not network.isActive():
                network.create()
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to start network {name}: {_message(exc)}") from exc

    def define_switch(self, xml: str) -> None:
        conn = self._connection()
        try:
            network = conn.networkDefineXML(xml)
        except libvirt.libvirtError as exc:
            raise HostError(_message(exc)) from exc
        try:
            network.setAutostart(1)
            network.create()
        except libvirt.libvirtError as exc:
            # Leave no half-defined network behind for the next fallback attempt.
            try:
                network.undefine()
            except libvirt.libvirtError:
                log("DEBUG", f"Could not undefine network {network.name()}")
            raise HostError(_message(exc)) from exc

    # Domains

    def machine_exists(self, name: str) -> bool:
        try:
            self._connection().lookupByName(name)
            return True
        except libvirt.libvirtError:
            return False

    def machine_xml(self, name: str) -> str:
        try:
            return self._domain(name).XMLDesc(libvirt.VIR_DOMAIN_XML_INACTIVE)
        except libvirt.libvirtError as exc:
            raise HostError(_message(exc)) from exc

    def machine_is_active(self, name: str) -> bool:
        try:
            return bool(self._domain(name).isActive())
        except libvirt.libvirtError as exc:
            raise HostError(_message(exc)) from exc

    def stop_machine(self, name: str) -> None:
        try:
            self._domain(name).destroy()
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to stop domain {name}: {_message(exc)}") from exc

    def undefine_machine(self, name: str) -> None:
        domain = self._domain(name)
        flags = (
            libvirt.VIR_DOMAIN_UNDEFINE_NVRAM
            | libvirt.VIR_DOMAIN_UNDEFINE_MANAGED_SAVE
            | libvirt.VIR_DOMAIN_UNDEFINE_SNAPSHOTS_METADATA
        )
        try:
            domain.undefineFlags(flags)
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to undefine domain {name}: {_message(exc)}") from exc

    def define_machine(self, xml: str) -> None:
        try:
            domain = self._connection().defineXML(xml)
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to define domain: {_message(exc)}") from exc
        if domain is None:
            raise HostError("Failed to define libvirt domain")

    def attach_device(self, name: str, xml: str) -> None:
        try:
            self._domain(name).attachDeviceFlags(xml, libvirt.VIR_DOMAIN_AFFECT_CONFIG)
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to attach device to {name}: {_message(exc)}") from exc

    def start_machine(self, name: str) -> None:
        domain = self._domain(name)
        try:
            if domain.isActive():
                log("INFO", f"Domain {name} already running")
                return
            domain.create()
        except libvirt.libvirtError as exc:
            raise HostError(f"Failed to start domain {name}: {_message(exc)}") from exc

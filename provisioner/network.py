"""Virtual network selection and fallback creation for hostvm-provisioner."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

from provisioner.constants import (
    FALLBACK_EXTERNAL_SWITCH,
    FALLBACK_INTERNAL_SUBNET,
    FALLBACK_INTERNAL_SWITCH,
    SWITCH_PRIORITY,
    SYSFS_NET_DIR,
)
from provisioner.exceptions import ProvisionerError
from provisioner.models import ErrorKind, Failed, Ok, StageResult, SwitchDescriptor, SwitchKind
from provisioner.utils import log

_EXTERNAL_FORWARD_MODES = {"bridge", "passthrough", "private", "vepa"}


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def classify_network_xml(xml: str) -> SwitchDescriptor:
    """Map a libvirt network definition onto a switch descriptor."""
    root = fromstring(xml)
    name = root.findtext("name", default="").strip()
    forward = root.find("forward")
    mode = forward.get("mode", "nat") if forward is not None else None

    if mode in _EXTERNAL_FORWARD_MODES:
        adapter = None
        iface = forward.find("interface")
        if iface is not None:
            adapter = iface.get("dev")
        else:
            bridge = root.find("bridge")
            if bridge is not None:
                adapter = bridge.get("name")
        return SwitchDescriptor(name=name, kind=SwitchKind.EXTERNAL, bound_adapter=adapter)
    if root.find("ip") is not None:
        return SwitchDescriptor(name=name, kind=SwitchKind.INTERNAL)
    if forward is None:
        return SwitchDescriptor(name=name, kind=SwitchKind.PRIVATE)
    return SwitchDescriptor(name=name, kind=SwitchKind.OTHER)


def _rank(switch: SwitchDescriptor):
    return SWITCH_PRIORITY[switch.kind], not switch.active


def choose_switch(
    switches: Sequence[SwitchDescriptor], preferred_name: Optional[str] = None
) -> Optional[SwitchDescriptor]:
    """Pick a switch: preferred name first, then by kind rank.

    Within a rank a running network beats a stopped one; remaining ties go by
    enumeration order.
    """
    if preferred_name:
        for switch in switches:
            if switch.name == preferred_name:
                return switch
    best: Optional[SwitchDescriptor] = None
    for switch in switches:
        if best is None or _rank(switch) < _rank(best):
            best = switch
    return best


def list_up_adapters(sysfs_dir: Path = SYSFS_NET_DIR) -> List[str]:
    """Return physical network adapters whose operstate is 'up', sorted by name."""
    adapters: List[str] = []
    try:
        entries = sorted(sysfs_dir.iterdir())
    except OSError:
        return adapters
    for entry in entries:
        # Virtual interfaces (bridges, taps, veth) have no backing device link.
        if not (entry / "device").exists():
            continue
        try:
            state = (entry / "operstate").read_text().strip().lower()
        except OSError:
            continue
        if state == "up":
            adapters.append(entry.name)
    return adapters


def render_external_network_xml(name: str, adapter: str) -> str:
    network = Element("network")
    SubElement(network, "name").text = name
    forward = SubElement(network, "forward", mode="bridge")
    SubElement(forward, "interface", dev=adapter)
    return _element_to_str(network)


def render_internal_network_xml(name: str, subnet: str = FALLBACK_INTERNAL_SUBNET) -> str:
    network = Element("network")
    SubElement(network, "name").text = name
    ip = SubElement(network, "ip", address=f"{subnet}.1", netmask="255.255.255.0")
    dhcp = SubElement(ip, "dhcp")
    SubElement(dhcp, "range", start=f"{subnet}.100", end=f"{subnet}.254")
    return _element_to_str(network)


class NetworkAttachmentSelector:
    def __init__(self, host, sysfs_dir: Path = SYSFS_NET_DIR) -> None:
        self.host = host
        self.sysfs_dir = sysfs_dir

    def select(self, preferred_name: Optional[str] = None) -> StageResult:
        try:
            switches = self.host.list_switches()
        except ProvisionerError as exc:
            return Failed(ErrorKind.NETWORK, f"could not enumerate virtual networks: {exc}")

        chosen = choose_switch(switches, preferred_name)
        if chosen is not None:
            if preferred_name and chosen.name != preferred_name:
                log("WARN", f"Preferred network '{preferred_name}' not found; using '{chosen.name}'")
            if not chosen.active:
                log("INFO", f"Starting inactive network '{chosen.name}'")
                try:
                    self.host.activate_switch(chosen.name)
                except ProvisionerError as exc:
                    return Failed(ErrorKind.NETWORK, f"could not start network '{chosen.name}': {exc}")
                chosen = replace(chosen, active=True)
            log("INFO", f"Using existing {chosen.kind.value} network '{chosen.name}'")
            return Ok(chosen)

        log("INFO", "No virtual networks defined; creating a fallback network")
        external = self._try_create_external(preferred_name or FALLBACK_EXTERNAL_SWITCH)
        if external is not None:
            return Ok(external)

        name = preferred_name or FALLBACK_INTERNAL_SWITCH
        try:
            self.host.define_switch(render_internal_network_xml(name))
        except ProvisionerError as exc:
            return Failed(ErrorKind.NETWORK, f"could not create internal network '{name}': {exc}")
        log("SUCCESS", f"Created internal network '{name}'")
        return Ok(SwitchDescriptor(name=name, kind=SwitchKind.INTERNAL))

    def _try_create_external(self, name: str) -> Optional[SwitchDescriptor]:
        adapters = list_up_adapters(self.sysfs_dir)
        if not adapters:
            log("INFO", "No physical adapter is up; skipping external network creation")
            return None
        adapter = adapters[0]
        try:
            self.host.define_switch(render_external_network_xml(name, adapter))
        except ProvisionerError as exc:
            log("WARN", f"External network on {adapter} failed ({exc}); falling back to internal")
            return None
        log("SUCCESS", f"Created external network '{name}' bound to {adapter}")
        return SwitchDescriptor(name=name, kind=SwitchKind.EXTERNAL, bound_adapter=adapter)

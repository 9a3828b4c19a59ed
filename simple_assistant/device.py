"""Best-effort description of the local machine for the system prompt."""

import platform
from pathlib import Path

from simple_assistant.logging import get_logger

log = get_logger(__name__)

UNKNOWN_DEVICE_INFO = "Unknown device info"


def _distro(os_release: Path) -> str | None:
    for line in os_release.read_text(encoding="utf-8", errors="replace").splitlines():
        if line.startswith("PRETTY_NAME="):
            return line.split("=", 1)[1].replace('"', "").strip()
    return None


def _kernel() -> str | None:
    uname = platform.uname()
    parts = [uname.system, uname.release, uname.version, uname.machine]
    text = " ".join(part for part in parts if part)
    return text or None


def _memory(meminfo: Path) -> str | None:
    values: dict[str, int] = {}
    for line in meminfo.read_text(encoding="utf-8", errors="replace").splitlines():
        key, _, rest = line.partition(":")
        fields = rest.split()
        if key in ("MemTotal", "MemAvailable") and fields and fields[0].isdigit():
            values[key] = int(fields[0])
    if "MemTotal" not in values:
        return None
    total = f"{values['MemTotal'] / 1024 / 1024:.1f}Gi total"
    if "MemAvailable" in values:
        return f"{total}, {values['MemAvailable'] / 1024 / 1024:.1f}Gi available"
    return total


def _cpu(cpuinfo: Path) -> str | None:
    for line in cpuinfo.read_text(encoding="utf-8", errors="replace").splitlines():
        if line.startswith("model name"):
            return line.split(":", 1)[1].strip()
    return None


def get_device_info(
    os_release: Path | str = "/etc/os-release",
    meminfo: Path | str = "/proc/meminfo",
    cpuinfo: Path | str = "/proc/cpuinfo",
) -> str:
    """Return a multi-line summary of distro, kernel, memory and CPU.

    Never raises; failures leave a note in the text or fall back to
    ``"Unknown device info"``.
    """
    info = ""
    try:
        probes = (
            ("Distro", lambda: _distro(Path(os_release))),
            ("Kernel", _kernel),
            ("Memory", lambda: _memory(Path(meminfo))),
            ("CPU", lambda: _cpu(Path(cpuinfo))),
        )
        for label, probe in probes:
            value = probe()
            if value:
                info += f"{label}: {value}\n"
    except Exception as e:
        log.debug("device info probe failed", error=str(e))
        info += f"Error gathering device info: {e}"
    return info or UNKNOWN_DEVICE_INFO

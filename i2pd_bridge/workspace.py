"""
Workspace provisioning for the i2pd router.

Lays out the persistent data directory the engine runs from:

    root/
      certificates/       trust anchors (reseed + family certs), seeded from the bundle
      tunnel-config/      tunnels.d style client/server tunnel definitions
      address-book/       hosts subscriptions
      network-database/   netDb router infos
      i2pd.conf           seeded once, never overwritten
      i2pd.log

Every step checks before acting so two provisioning calls racing on the same
root leave a consistent tree behind.
"""

import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .errors import WorkspaceIOError

LOGGER = logging.getLogger("i2pd_bridge.workspace")


CERTIFICATES_DIR = "certificates"
TUNNEL_CONFIG_DIR = "tunnel-config"
ADDRESS_BOOK_DIR = "address-book"
NETWORK_DATABASE_DIR = "network-database"
CONFIG_FILE = "i2pd.conf"
LOG_FILE = "i2pd.log"

SUBDIRECTORIES = (CERTIFICATES_DIR, TUNNEL_CONFIG_DIR, ADDRESS_BOOK_DIR, NETWORK_DATABASE_DIR)

CONFIG_TEMPLATE = """\
## i2pd configuration file

## Logging
log = file
logfile = {log_path}
loglevel = info

## Network
ipv4 = true
ipv6 = false

## Bandwidth (L=32KB/s, O=256KB/s, P=2048KB/s, X=unlimited)
bandwidth = L

## Don't participate in transit traffic (save battery)
notransit = true

## UPnP (usually not available on mobile hosts)
[upnp]
enabled = false

## HTTP Proxy
[httpproxy]
enabled = true
address = 127.0.0.1
port = 4444

## SOCKS Proxy
[socksproxy]
enabled = true
address = 127.0.0.1
port = 4447

## SAM Bridge
[sam]
enabled = true
address = 127.0.0.1
port = 7656

## I2CP (disabled by default)
[i2cp]
enabled = false

## Reseed
[reseed]
verify = true
"""


@dataclass(frozen=True)
class WorkspaceLayout:
    root: Path
    certificates_dir: Path
    tunnel_config_dir: Path
    address_book_dir: Path
    network_database_dir: Path
    config_file: Path
    log_file: Path

    @classmethod
    def for_root(cls, root: Union[str, Path]) -> "WorkspaceLayout":
        root = Path(root).expanduser().absolute()
        return cls(
            root=root,
            certificates_dir=root / CERTIFICATES_DIR,
            tunnel_config_dir=root / TUNNEL_CONFIG_DIR,
            address_book_dir=root / ADDRESS_BOOK_DIR,
            network_database_dir=root / NETWORK_DATABASE_DIR,
            config_file=root / CONFIG_FILE,
            log_file=root / LOG_FILE,
        )

    def directories(self) -> List[Path]:
        return [
            self.root,
            self.certificates_dir,
            self.tunnel_config_dir,
            self.address_book_dir,
            self.network_database_dir,
        ]

    def as_dict(self) -> dict:
        return {
            "root": str(self.root),
            "certificates": str(self.certificates_dir),
            "tunnelConfig": str(self.tunnel_config_dir),
            "addressBook": str(self.address_book_dir),
            "networkDatabase": str(self.network_database_dir),
            "config": str(self.config_file),
            "log": str(self.log_file),
        }


def render_config(layout: WorkspaceLayout) -> str:
    return CONFIG_TEMPLATE.format(log_path=layout.log_file)


def ensure_workspace(
    root: Union[str, Path],
    certificates_bundle: Optional[Union[str, Path]] = None,
) -> WorkspaceLayout:
    """Create the workspace under ``root`` if needed and return its layout.

    Raises WorkspaceIOError when a directory or the config file cannot be
    created. Certificate copy failures are logged and never raised.
    """
    if not str(root).strip():
        raise WorkspaceIOError("workspace root must not be empty")
    layout = WorkspaceLayout.for_root(root)
    for directory in layout.directories():
        _ensure_directory(directory)
    _seed_config(layout)
    if certificates_bundle:
        copy_bundled_certificates(Path(certificates_bundle), layout.certificates_dir)
    else:
        LOGGER.debug("No certificate bundle configured; skipping copy")
    return layout


def reset_config(layout: WorkspaceLayout) -> None:
    """Overwrite the config file with the default template, discarding user edits."""
    tmp_path = layout.config_file.with_name(f".{layout.config_file.name}.tmp")
    try:
        tmp_path.write_text(render_config(layout), encoding="utf-8")
        os.replace(tmp_path, layout.config_file)
    except OSError as exc:
        raise WorkspaceIOError(f"failed to reset {layout.config_file}: {exc}") from exc
    LOGGER.info("Config reset to defaults at %s", layout.config_file)


def copy_bundled_certificates(bundle_dir: Path, certificates_dir: Path) -> int:
    """Copy bundle files missing from ``certificates_dir``; returns how many were copied."""
    if not bundle_dir.is_dir():
        LOGGER.debug("No certificate bundle at %s; skipping copy", bundle_dir)
        return 0
    copied = 0
    try:
        sources = sorted(p for p in bundle_dir.rglob("*") if p.is_file())
    except OSError as exc:
        LOGGER.warning("Failed to list certificate bundle %s: %s", bundle_dir, exc)
        return 0
    for src in sources:
        dst = certificates_dir / src.relative_to(bundle_dir)
        if dst.exists():
            continue
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            _copy_exclusive(src, dst)
            copied += 1
        except FileExistsError:
            continue
        except OSError as exc:
            LOGGER.warning("Failed to copy certificate %s: %s", src, exc)
    if copied:
        LOGGER.info("Copied %d bundled certificate(s) into %s", copied, certificates_dir)
    return copied


# internal helpers -------------------------------------------------
def _ensure_directory(path: Path) -> None:
    if path.is_dir():
        return
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise WorkspaceIOError(f"failed to create {path}: {exc}") from exc
    LOGGER.debug("Created %s", path)


def _seed_config(layout: WorkspaceLayout) -> None:
    if layout.config_file.exists():
        return
    try:
        with open(layout.config_file, "x", encoding="utf-8") as fh:
            fh.write(render_config(layout))
    except FileExistsError:
        return
    except OSError as exc:
        raise WorkspaceIOError(f"failed to write {layout.config_file}: {exc}") from exc
    LOGGER.info("Wrote default config %s", layout.config_file)


def _copy_exclusive(src: Path, dst: Path) -> None:
    # "x" mode turns a concurrent copy of the same file into FileExistsError
    with open(src, "rb") as fin:
        with open(dst, "xb") as fout:
            try:
                shutil.copyfileobj(fin, fout)
            except OSError:
                fout.close()
                with contextlib.suppress(OSError):
                    dst.unlink()
                raise
    shutil.copymode(src, dst)

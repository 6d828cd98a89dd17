#!/usr/bin/python3
"""qemu-phantom — build a QEMU whose guests are harder to fingerprint.

Fetches the pristine QEMU release, applies the CPU-vendor patch from
patches/QEMU/, then rewrites the hardware identity strings QEMU hands to
guests (USB serials, IDE drive models, ACPI OEM IDs, SMBIOS manufacturer)
before handing the tree to ./configure && make install.
"""

import argparse
import json
import os
import random
import re
import shutil
import string
import subprocess
import sys
import tarfile
import tempfile
import time
import urllib.request
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

# ── Constants ────────────────────────────────────────────────────────────────

QEMU_VERSION = "9.1.0"
QEMU_DOWNLOAD_BASE = "https://download.qemu.org"

SRC_DIR = "src"
PATCH_DIR = "patches/QEMU"
STAMP_NAME = ".qemu-phantom.json"

STAGES = ["packages", "acquire", "patch", "spoof", "build", "cleanup"]

CONFIGURE_FLAGS = [
    "--target-list=x86_64-softmmu", "--enable-libusb", "--disable-werror",
]

REQUIRED_PACKAGES = {
    "Arch": [
        "base-devel", "dmidecode", "glib2", "libusb", "ninja",
        "python-packaging", "python-sphinx", "python-sphinx_rtd_theme",
    ],
    "Debian": [
        "build-essential", "libfdt-dev", "libglib2.0-dev", "libpixman-1-dev",
        "libusb-1.0-0-dev", "ninja-build", "python3-venv", "zlib1g-dev",
    ],
    "Fedora": [
        "bzip2", "glib2-devel", "libfdt-devel", "libusb1-devel",
        "ninja-build", "pixman-devel", "python3", "zlib-devel",
    ],
}

PACKAGE_MANAGERS = {
    "Arch":   {"check": ["pacman", "-Q"], "install": ["pacman", "-S", "--noconfirm"]},
    "Debian": {"check": ["dpkg", "-s"],   "install": ["apt", "-y", "install"]},
    "Fedora": {"check": ["rpm", "-q"],    "install": ["dnf", "-yq", "install"]},
}

# Source file holding the smbios_set_defaults() call, per QEMU release.
CHIPSET_FILES = {
    "8.2.6": "hw/i386/pc_q35.c",
    "9.1.0": "hw/i386/fw_cfg.c",
}

USB_SUBTREE = "hw/usb"
IDE_CORE_FILE = "hw/ide/core.c"
ACPI_HEADER = "include/hw/acpi/aml-build.h"

SERIAL_PATTERN = r"\[(?:STR|STRING)_SERIALNUMBER\]"

# Model strings the vendor patch puts in hw/ide/core.c.
IDE_CD_DEFAULT = "HL-DT-ST BD-RE WH16NS60"
IDE_CFATA_DEFAULT = "MicroSD J45S9"
IDE_DEFAULT_DEFAULT = "Samsung SSD 980 500GB"


# ── Model pools ──────────────────────────────────────────────────────────────

IDE_CD_MODELS = (
    "HL-DT-ST BD-RE WH16NS60", "HL-DT-ST DVDRAM GH24NSC0",
    "HL-DT-ST BD-RE BH16NS40", "HL-DT-ST DVD+-RW GT80N",
    "HL-DT-ST DVD-RAM GH22NS30", "HL-DT-ST DVD+RW GCA-4040N",
    "Pioneer BDR-XD07B", "Pioneer DVR-221LBK", "Pioneer BDR-209DBK",
    "Pioneer DVR-S21WBK", "Pioneer BDR-XD05B", "ASUS BW-16D1HT",
    "ASUS DRW-24B1ST", "ASUS SDRW-08D2S-U", "ASUS BC-12D2HT",
    "ASUS SBW-06D2X-U", "Samsung SH-224FB", "Samsung SE-506BB",
    "Samsung SH-B123L", "Samsung SE-208GB", "Samsung SN-208DB",
    "Sony NEC Optiarc AD-5280S", "Sony DRU-870S", "Sony BWU-500S",
    "Sony NEC Optiarc AD-7261S", "Sony AD-7200S", "Lite-On iHAS124-14",
    "Lite-On iHBS112-04", "Lite-On eTAU108", "Lite-On iHAS324-17",
    "Lite-On eBAU108", "HP DVD1260i", "HP DVD640",
    "HP BD-RE BH30L", "HP DVD Writer 300n", "HP DVD Writer 1265i",
)

IDE_CFATA_MODELS = (
    "SanDisk Ultra microSDXC UHS-I", "SanDisk Extreme microSDXC UHS-I",
    "SanDisk High Endurance microSDXC", "SanDisk Industrial microSD",
    "SanDisk Mobile Ultra microSDHC", "Samsung EVO Select microSDXC",
    "Samsung PRO Endurance microSDHC", "Samsung PRO Plus microSDXC",
    "Samsung EVO Plus microSDXC", "Samsung PRO Ultimate microSDHC",
    "Kingston Canvas React Plus microSD", "Kingston Canvas Go! Plus microSD",
    "Kingston Canvas Select Plus microSD", "Kingston Industrial microSD",
    "Kingston Endurance microSD", "Lexar Professional 1066x microSDXC",
    "Lexar High-Performance 633x microSDHC", "Lexar PLAY microSDXC",
    "Lexar Endurance microSD", "Lexar Professional 1000x microSDHC",
    "PNY Elite-X microSD", "PNY PRO Elite microSD",
    "PNY High Performance microSD", "PNY Turbo Performance microSD",
    "PNY Premier-X microSD", "Transcend High Endurance microSDXC",
    "Transcend Ultimate microSDXC", "Transcend Industrial Temp microSD",
    "Transcend Premium microSDHC", "Transcend Superior microSD",
    "ADATA Premier Pro microSDXC", "ADATA XPG microSDXC",
    "ADATA High Endurance microSDXC", "ADATA Premier microSDHC",
    "ADATA Industrial microSD", "Toshiba Exceria Pro microSDXC",
    "Toshiba Exceria microSDHC", "Toshiba M203 microSD",
    "Toshiba N203 microSD", "Toshiba High Endurance microSD",
)

IDE_DEFAULT_MODELS = (
    "Samsung SSD 970 EVO 1TB", "Samsung SSD 860 QVO 1TB",
    "Samsung SSD 850 PRO 1TB", "Samsung SSD T7 Touch 1TB",
    "Samsung SSD 840 EVO 1TB", "WD Blue SN570 NVMe SSD 1TB",
    "WD Black SN850 NVMe SSD 1TB", "WD Green 1TB SSD",
    "WD My Passport SSD 1TB", "WD Blue 3D NAND 1TB SSD",
    "Seagate BarraCuda SSD 1TB", "Seagate FireCuda 520 SSD 1TB",
    "Seagate One Touch SSD 1TB", "Seagate IronWolf 110 SSD 1TB",
    "Seagate Fast SSD 1TB", "Crucial MX500 1TB 3D NAND SSD",
    "Crucial P5 Plus NVMe SSD 1TB", "Crucial BX500 1TB 3D NAND SSD",
    "Crucial X8 Portable SSD 1TB", "Crucial P3 1TB PCIe 3.0 3D NAND NVMe SSD",
    "Kingston A2000 NVMe SSD 1TB", "Kingston KC2500 NVMe SSD 1TB",
    "Kingston A400 SSD 1TB", "Kingston HyperX Savage SSD 1TB",
    "Kingston DataTraveler Vault Privacy 3.0 1TB", "SanDisk Ultra 3D NAND SSD 1TB",
    "SanDisk Extreme Portable SSD V2 1TB", "SanDisk SSD PLUS 1TB",
    "SanDisk Ultra 3D 1TB NAND SSD", "SanDisk Extreme Pro 1TB NVMe SSD",
)

# (OEM ID, OEM table ID) as found in real firmware; 6 and 8 chars, space padded.
ACPI_VENDOR_PAIRS = (
    ("DELL  ", "Dell Inc"),
    ("ALASKA", "A M I   "),
    ("INTEL ", "U Rvp   "),
    (" ASUS ", "Notebook"),
    ("MSI NB", "MEGABOOK"),
    ("LENOVO", "TC-O5Z  "),
    ("LENOVO", "CB-01   "),
    ("SECCSD", "LH43STAR"),
    ("LGE   ", "ICL     "),
)

# (audit field, literal the vendor patch leaves behind, replacement pool)
IDE_MODEL_FIELDS = (
    ("CD model", IDE_CD_DEFAULT, IDE_CD_MODELS),
    ("CFATA model", IDE_CFATA_DEFAULT, IDE_CFATA_MODELS),
    ("default model", IDE_DEFAULT_DEFAULT, IDE_DEFAULT_MODELS),
)


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    ROCKET   = "\uf135"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    PACKAGE  = "\uf187"   # archive
    DOWNLOAD = "\uf019"   # download
    WRENCH   = "\uf0ad"   # wrench
    MASK     = "\uf070"   # eye-slash
    COGS     = "\uf085"   # cogs
    TRASH    = "\uf1f8"   # trash
    STAMP    = "\uf249"   # id-badge
    FILE     = "\uf15c"   # file-text

STAGE_ICONS = {
    "packages": _I.PACKAGE,
    "acquire":  _I.DOWNLOAD,
    "patch":    _I.WRENCH,
    "spoof":    _I.MASK,
    "build":    _I.COGS,
    "cleanup":  _I.TRASH,
}

STAGE_LABELS = {
    "packages": "Build Dependencies",
    "acquire":  "QEMU Source",
    "patch":    "Vendor Patch",
    "spoof":    "Identity Spoofing",
    "build":    "Build & Install",
    "cleanup":  "Cleanup",
}


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {icon}  {title}  {tag}")
    print(f"{'─' * 60}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _fatal(msg: str, code: int = 1) -> None:
    print(f"  {_C.BOLD}{_C.RED}{_I.ERROR}  FATAL:{_C.RESET} {msg}", file=sys.stderr)
    sys.exit(code)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def prompt_yes_no(question: str) -> bool:
    """Ask *question*; only an explicit y/yes counts as agreement.

    EOF counts as no.  Ctrl-C propagates and ends the run.
    """
    try:
        answer = input(f"  {_C.BOLD}{question}{_C.RESET} [y/N] ").strip().lower()
    except EOFError:
        print()
        return False
    return answer in ("y", "yes")


def _privileged(cmd: list) -> list:
    """Prefix *cmd* with sudo unless we already run as root."""
    if os.geteuid() == 0:
        return list(cmd)
    return ["sudo"] + list(cmd)


# ── Errors ───────────────────────────────────────────────────────────────────

class PhantomError(Exception):
    """Fatal pipeline failure; main() reports it and exits non-zero."""


class ConfigurationError(PhantomError):
    pass


class AcquisitionError(PhantomError):
    pass


class RemovalError(AcquisitionError):
    pass


class DownloadError(AcquisitionError):
    pass


class ExtractionError(AcquisitionError):
    pass


class SourceTreeError(AcquisitionError):
    pass


class PatchNotFound(PhantomError):
    pass


class PatchApplyFailed(PhantomError):
    pass


class PackageInstallError(PhantomError):
    pass


class BuildError(PhantomError):
    pass


class InvalidArgument(ValueError):
    pass


class SpoofMutationWarning(UserWarning):
    """A spoof mutation that matched nothing or failed.

    Collected by AuditLog and reported in the run summary; never raised.
    """

    def __init__(self, path, field: str, reason: str):
        super().__init__(f"{field}: {reason} ({path})")
        self.path = str(path)
        self.field = field
        self.reason = reason


# ── Configuration ────────────────────────────────────────────────────────────

class Distro(Enum):
    ARCH = "Arch"
    DEBIAN = "Debian"
    FEDORA = "Fedora"


class CpuVendor(Enum):
    AMD = "amd"
    INTEL = "intel"


VENDOR_IDS = {
    "AuthenticAMD": CpuVendor.AMD,
    "GenuineIntel": CpuVendor.INTEL,
}

OS_RELEASE_FAMILIES = {
    "arch": Distro.ARCH,
    "manjaro": Distro.ARCH,
    "debian": Distro.DEBIAN,
    "ubuntu": Distro.DEBIAN,
    "fedora": Distro.FEDORA,
}


def resolve_vendor(vendor_id: str) -> CpuVendor:
    """Map a CPUID vendor string to the patch vendor tag."""
    vendor = VENDOR_IDS.get((vendor_id or "").strip())
    if vendor is None:
        raise ConfigurationError(f"Unknown CPU vendor: {vendor_id!r}")
    return vendor


def resolve_distro(name: str) -> Distro:
    wanted = (name or "").strip().lower()
    for distro in Distro:
        if distro.value.lower() == wanted:
            return distro
    raise ConfigurationError(
        f"Distribution {name!r} not recognized or not supported "
        f"(expected one of: {', '.join(d.value for d in Distro)})"
    )


def probe_vendor_id(environ=None, cpuinfo: Path = Path("/proc/cpuinfo")) -> str:
    """Return $VENDOR_ID, or the first vendor_id line of /proc/cpuinfo."""
    environ = os.environ if environ is None else environ
    if environ.get("VENDOR_ID"):
        return environ["VENDOR_ID"]
    try:
        with open(cpuinfo) as fh:
            for line in fh:
                key, _, val = line.partition(":")
                if key.strip() == "vendor_id":
                    return val.strip()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read {cpuinfo}: {exc}") from exc
    raise ConfigurationError(f"No vendor_id found in {cpuinfo}")


def detect_distro(os_release: Path = Path("/etc/os-release")) -> Distro:
    """Parse /etc/os-release → Distro, matching ID then ID_LIKE."""
    info = {}
    try:
        with open(os_release) as fh:
            for line in fh:
                line = line.strip()
                if "=" in line:
                    key, _, val = line.partition("=")
                    info[key] = val.strip('"')
    except FileNotFoundError:
        raise ConfigurationError(
            f"{os_release} not found — pass --distro or set DISTRO"
        ) from None

    candidates = [info.get("ID", "")] + info.get("ID_LIKE", "").split()
    for candidate in candidates:
        distro = OS_RELEASE_FAMILIES.get(candidate.lower())
        if distro is not None:
            return distro
    raise ConfigurationError(
        f"Detected {info.get('ID', 'unknown')} — not a supported distribution"
    )


@dataclass(frozen=True)
class PhantomConfig:
    distro: Distro
    log_path: Path
    vendor: CpuVendor
    qemu_version: str = QEMU_VERSION
    src_dir: Path = Path(SRC_DIR)
    patch_dir: Path = Path(PATCH_DIR)
    packages: bool = True
    build: bool = True
    assume_yes: bool = False
    dry_run: bool = False
    quiet: bool = False
    seed: Optional[int] = None


def load_config(args: argparse.Namespace, environ=None) -> PhantomConfig:
    """Validate CLI + environment input; raises before any side effect."""
    environ = os.environ if environ is None else environ

    distro_name = args.distro or environ.get("DISTRO")
    distro = resolve_distro(distro_name) if distro_name else detect_distro()

    log_file = args.log_file or environ.get("LOG_FILE")
    if not log_file:
        raise ConfigurationError("No log file given (use --log-file or set LOG_FILE)")

    if not re.fullmatch(r"\d+\.\d+\.\d+", args.qemu_version):
        raise ConfigurationError(f"Malformed QEMU version: {args.qemu_version!r}")

    vendor = resolve_vendor(probe_vendor_id(environ))

    return PhantomConfig(
        distro=distro,
        log_path=Path(log_file),
        vendor=vendor,
        qemu_version=args.qemu_version,
        src_dir=Path(args.src_dir),
        patch_dir=Path(args.patch_dir),
        packages=not args.skip_packages,
        build=not args.no_build,
        assume_yes=args.yes,
        dry_run=args.dry_run,
        quiet=args.quiet,
        seed=args.seed,
    )


# ── Release & patch identity ─────────────────────────────────────────────────

@dataclass(frozen=True)
class SourceRelease:
    version: str

    @property
    def dir_name(self) -> str:
        return f"qemu-{self.version}"

    @property
    def archive(self) -> str:
        return f"{self.dir_name}.tar.xz"

    @property
    def url(self) -> str:
        return f"{QEMU_DOWNLOAD_BASE}/{self.archive}"


@dataclass(frozen=True)
class PatchTarget:
    vendor: CpuVendor
    release: SourceRelease
    patch_dir: Path

    @property
    def file_name(self) -> str:
        return f"{self.vendor.value}-{self.release.dir_name}.patch"

    @property
    def path(self) -> Path:
        return Path(self.patch_dir) / self.file_name


# ── Random values ────────────────────────────────────────────────────────────

ALNUM = string.ascii_uppercase + string.digits

_SYSTEM_RNG = random.SystemRandom()


def random_alnum(length: int, rng=None) -> str:
    """*length* independent draws from [A-Z0-9]."""
    if length < 0:
        raise InvalidArgument(f"length must be >= 0, got {length}")
    rng = rng or _SYSTEM_RNG
    return "".join(rng.choice(ALNUM) for _ in range(length))


def pick_one(pool, rng=None):
    """Uniform pick from a non-empty sequence.

    Tuples in the pool come back whole, which keeps paired vendor
    fields from the same index.
    """
    if not pool:
        raise InvalidArgument("cannot pick from an empty pool")
    rng = rng or _SYSTEM_RNG
    return pool[rng.randrange(len(pool))]


# ── File discovery ───────────────────────────────────────────────────────────

def _read_source(path) -> str:
    # surrogateescape round-trips any stray non-UTF-8 bytes unchanged
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as fh:
        return fh.read()


def find_files(root, pattern):
    """Yield regular files under *root* whose contents match *pattern*.

    Symlinks are never followed, so the walk stays inside *root*.  A
    missing root yields nothing.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_symlink() or not path.is_file():
                continue
            try:
                text = _read_source(path)
            except OSError as exc:
                _warn(f"Cannot read {path}: {exc.strerror or exc}")
                continue
            if regex.search(text):
                yield path


def _atomic_write(path: Path, text: str) -> None:
    """Replace *path* with *text* through a sibling temp file, keeping its mode."""
    path = Path(path)
    mode = path.stat().st_mode & 0o7777 if path.exists() else 0o644
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8",
                       errors="surrogateescape", newline="") as fh:
            fh.write(text)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ── Audit trail ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SpoofRecord:
    path: str
    field: str
    old: str
    new: str
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


class AuditLog:
    """Append-only record of every spoof mutation and warning in a run.

    Each entry is echoed to the console and, when a log path is set,
    appended to the log file.
    """

    def __init__(self, log_path=None, dry_run: bool = False):
        self.log_path = log_path
        self.dry_run = dry_run
        self.records = []
        self.warnings = []

    def record(self, path, field: str, old: str, new: str) -> SpoofRecord:
        rec = SpoofRecord(str(path), field, old, new, _now())
        self.records.append(rec)
        line = f"Modified: '{Path(path).name}' {field} with new value(s): {new}"
        if self.dry_run:
            _dry(line)
        else:
            print(f"  {_C.GREEN}{line}{_C.RESET}")
        self._append(line)
        return rec

    def warn(self, path, field: str, reason: str) -> SpoofMutationWarning:
        warning = SpoofMutationWarning(path, field, reason)
        self.warnings.append(warning)
        _warn(str(warning))
        self._append(f"WARNING: {warning}")
        return warning

    def _append(self, line: str) -> None:
        if self.log_path is None:
            return
        with open(self.log_path, "a") as fh:
            fh.write(line + "\n")


# ── Text mutation ────────────────────────────────────────────────────────────

# Body of a C string literal: no bare quote or newline, escapes allowed.
C_STRING_BODY = r'(?:[^"\\\n]|\\.)*'


def c_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


class TextMutator:
    """Whole-file rewrites of C string literals, written back atomically.

    Both shapes are idempotent for a fixed value and report zero matches
    as a warning on the audit log instead of failing.
    """

    def __init__(self, audit: AuditLog, dry_run: bool = False):
        self.audit = audit
        self.dry_run = dry_run

    def _load(self, path, field: str):
        try:
            return _read_source(path)
        except OSError as exc:
            self.audit.warn(path, field, f"cannot read file ({exc.strerror or exc})")
            return None

    def _store(self, path, before: str, after: str) -> None:
        if self.dry_run or before == after:
            return
        _atomic_write(Path(path), after)

    def replace_between(self, path, prefix: str, suffix: str, value: str,
                        field: str, flags: int = 0) -> int:
        """Replace the string body between regex *prefix* and *suffix*.

        Every occurrence gets *value*; prefix and suffix are left alone.
        Returns the number of occurrences.
        """
        text = self._load(path, field)
        if text is None:
            return 0

        regex = re.compile(
            f"(?P<head>{prefix})(?P<body>{C_STRING_BODY})(?={suffix})", flags
        )
        replacement = c_escape(value)
        olds = []

        def _swap(m):
            olds.append(m.group("body"))
            return m.group("head") + replacement

        updated = regex.sub(_swap, text)
        if not olds:
            self.audit.warn(path, field, "anchor not found")
            return 0

        self._store(path, text, updated)
        old = olds[0] if len(set(olds)) == 1 else "*"
        self.audit.record(path, field, old, value)
        return len(olds)

    def replace_literal(self, path, literals, value: str, field: str) -> int:
        """Replace the first quoted literal of *literals* present in *path*."""
        text = self._load(path, field)
        if text is None:
            return 0

        for literal in literals:
            if not literal:
                continue
            quoted = f'"{c_escape(literal)}"'
            count = text.count(quoted)
            if not count:
                continue
            self._store(path, text, text.replace(quoted, f'"{c_escape(value)}"'))
            self.audit.record(path, field, literal, value)
            return count

        wanted = ", ".join(repr(lit) for lit in literals if lit)
        self.audit.warn(path, field, f"literal not found: {wanted}")
        return 0


# ── Spoof engine ─────────────────────────────────────────────────────────────

PASS_LABELS = {
    "serials": "USB serial numbers",
    "drive":   "IDE drive identity",
    "acpi":    "ACPI OEM strings",
    "chipset": "SMBIOS manufacturer",
}


def probe_dmi_manufacturer() -> str:
    """Processor manufacturer from `dmidecode -t 4` (needs root)."""
    result = subprocess.run(
        _privileged(["dmidecode", "-t", "4"]),
        capture_output=True, text=True, check=True,
    )
    for line in result.stdout.splitlines():
        key, _, val = line.strip().partition(":")
        if key == "Manufacturer":
            return val.strip()
    return ""


class SpoofEngine:
    """Runs the four identity passes over a patched QEMU tree.

    A pass that blows up is recorded as a warning and the next pass still
    runs; the caller decides what the warnings mean for the exit status.
    """

    PASSES = ("serials", "drive", "acpi", "chipset")

    def __init__(self, tree, qemu_version: str, mutator: TextMutator,
                 rng=None, manufacturer=None, previous=None):
        self.tree = Path(tree)
        self.qemu_version = qemu_version
        self.mutator = mutator
        self.audit = mutator.audit
        self.rng = rng or _SYSTEM_RNG
        self.manufacturer = manufacturer or probe_dmi_manufacturer
        # field → value written by the previous run on this tree
        self.previous = dict(previous or {})
        self.counts = {}

    def run(self) -> list:
        start = len(self.audit.records)
        for name in self.PASSES:
            before = len(self.audit.records)
            try:
                getattr(self, f"spoof_{name}")()
            except Exception as exc:
                self.audit.warn(self.tree, PASS_LABELS[name], f"pass failed: {exc}")
            self.counts[name] = len(self.audit.records) - before
        return self.audit.records[start:]

    def spoof_serials(self) -> None:
        root = self.tree / USB_SUBTREE
        files = list(find_files(root, SERIAL_PATTERN))
        if not files:
            self.audit.warn(root, "USB serial", "no file declares a serial number")
            return
        for path in files:
            self.mutator.replace_between(
                path, SERIAL_PATTERN + r' *= *"', '"',
                random_alnum(10, self.rng), "USB serial",
            )

    def spoof_drive(self) -> None:
        core = self.tree / IDE_CORE_FILE
        # snprintf(..., "QM%05d", s->drive_serial); keeps the numeric suffix
        self.mutator.replace_between(
            core, '"', r'%05d", s->drive_serial\);',
            random_alnum(15, self.rng), "drive serial",
        )
        for field, default, pool in IDE_MODEL_FIELDS:
            literals = [default]
            if self.previous.get(field) and self.previous[field] != default:
                literals.append(self.previous[field])
            self.mutator.replace_literal(core, literals, pick_one(pool, self.rng), field)

    def spoof_acpi(self) -> None:
        header = self.tree / ACPI_HEADER
        appname6, appname8 = pick_one(ACPI_VENDOR_PAIRS, self.rng)
        self.mutator.replace_between(
            header, r'^#define ACPI_BUILD_APPNAME6 "', '"', appname6,
            "ACPI APPNAME6", flags=re.MULTILINE,
        )
        self.mutator.replace_between(
            header, r'^#define ACPI_BUILD_APPNAME8 "', '"', appname8,
            "ACPI APPNAME8", flags=re.MULTILINE,
        )

    def spoof_chipset(self) -> None:
        rel = CHIPSET_FILES.get(self.qemu_version)
        if rel is None:
            self.audit.warn(self.tree, "SMBIOS manufacturer",
                            f"unsupported QEMU version {self.qemu_version}; skipped")
            return
        manufacturer = self.manufacturer()
        if not manufacturer:
            self.audit.warn(self.tree / rel, "SMBIOS manufacturer",
                            "host reported no manufacturer; skipped")
            return
        self.mutator.replace_between(
            self.tree / rel, r'smbios_set_defaults\("', '",',
            manufacturer, "SMBIOS manufacturer",
        )


# ── Patch applier ────────────────────────────────────────────────────────────

class PatchState(Enum):
    NOT_APPLIED = "not-applied"
    APPLIED = "applied"
    FAILED = "failed"


class PatchApplier:

    def __init__(self, target: PatchTarget, tree, runner):
        self.target = target
        self.tree = Path(tree)
        self.runner = runner
        self.state = PatchState.NOT_APPLIED

    def apply(self) -> PatchState:
        """Apply the vendor patch with `patch -fsp1` from the tree root."""
        path = self.target.path
        if not path.is_file():
            raise PatchNotFound(f"Patch file {path} not found")

        _info(f"Applying {self.target.file_name}")
        try:
            result = self.runner(
                ["patch", "-fsp1", "-i", str(path.resolve())], cwd=self.tree,
            )
        except OSError as exc:
            self.state = PatchState.FAILED
            raise PatchApplyFailed(f"Cannot run patch: {exc}") from exc

        if result is not None and result.returncode != 0:
            self.state = PatchState.FAILED
            raise PatchApplyFailed(
                f"Failed to apply {self.target.file_name} "
                f"(exit {result.returncode}); check the log for rejected hunks"
            )

        self.state = PatchState.APPLIED
        return self.state


# ── Source acquisition ───────────────────────────────────────────────────────

class AcquireState(Enum):
    ABSENT = "absent"
    PRESENT = "present"
    REACQUIRING = "reacquiring"


# Python >= 3.12 ships extraction filters; older interpreters extract as-is.
_TAR_FILTER = {"filter": "data"} if hasattr(tarfile, "data_filter") else {}


class SourceAcquirer:
    """Makes sure src/qemu-<version>/ holds a pristine extracted release."""

    def __init__(self, release: SourceRelease, src_dir, runner, prompt,
                 dry_run: bool = False):
        self.release = release
        self.src_dir = Path(src_dir)
        self.runner = runner
        self.prompt = prompt
        self.dry_run = dry_run
        self.state = AcquireState.PRESENT if self.tree.is_dir() else AcquireState.ABSENT

    @property
    def tree(self) -> Path:
        return self.src_dir / self.release.dir_name

    @property
    def archive(self) -> Path:
        return self.src_dir / self.release.archive

    def acquire(self) -> AcquireState:
        if self.tree.is_dir():
            _warn(f"Directory {self.tree} already exists")
            if not self.prompt("Delete and re-download the QEMU source?", default=False):
                _info("Keeping existing directory. Skipping re-download.")
                self.state = AcquireState.PRESENT
                return self.state
            self.state = AcquireState.REACQUIRING
            self._remove_tree()
            _info("Old directory deleted. Re-downloading...")

        self._download()
        self._extract()

        if not self.dry_run and not self.tree.is_dir():
            raise SourceTreeError(f"Source directory {self.tree} missing after extraction")
        self.state = AcquireState.PRESENT
        _info(f"QEMU {self.release.version} source acquired at {self.tree}")
        return self.state

    def _remove_tree(self) -> None:
        try:
            result = self.runner(["rm", "-rf", str(self.tree)], privileged=True)
        except OSError as exc:
            raise RemovalError(f"Cannot remove {self.tree}: {exc}") from exc
        if result is None:
            return
        if result.returncode != 0 or self.tree.exists():
            raise RemovalError(f"Failed to remove existing directory {self.tree}")

    def _download(self) -> None:
        url = self.release.url
        if self.dry_run:
            _dry(f"download {url} → {self.archive}")
            return
        _info(f"{_I.DOWNLOAD}  Downloading {url}")
        self.src_dir.mkdir(parents=True, exist_ok=True)
        try:
            urllib.request.urlretrieve(url, self.archive)
        except (OSError, ValueError) as exc:
            self.archive.unlink(missing_ok=True)
            raise DownloadError(f"Failed to download {url}: {exc}") from exc

    def _extract(self) -> None:
        """Unpack into a staging dir, then move the tree into place."""
        if self.dry_run:
            _dry(f"extract {self.archive} → {self.tree}")
            return
        _info(f"Extracting {self.archive.name}")
        staging = Path(tempfile.mkdtemp(prefix=f".{self.release.dir_name}.",
                                        dir=self.src_dir))
        try:
            try:
                with tarfile.open(self.archive, "r:xz") as tar:
                    tar.extractall(staging, **_TAR_FILTER)
            except (tarfile.TarError, EOFError, OSError) as exc:
                raise ExtractionError(
                    f"Failed to extract {self.archive}: {exc}"
                ) from exc
            extracted = staging / self.release.dir_name
            if not extracted.is_dir():
                raise SourceTreeError(
                    f"{self.archive.name} has no top-level {self.release.dir_name}/"
                )
            extracted.rename(self.tree)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def cleanup(self) -> None:
        """Remove archive and tree, then src/ itself if nothing else is in it."""
        try:
            self.runner(["rm", "-rf", str(self.archive), str(self.tree)],
                        privileged=True)
        except OSError as exc:
            raise RemovalError(f"Cannot remove {self.tree}: {exc}") from exc
        if self.dry_run:
            return
        if self.src_dir.is_dir() and not any(self.src_dir.iterdir()):
            self.src_dir.rmdir()
        self.state = AcquireState.ABSENT


# ── RunStamp ─────────────────────────────────────────────────────────────────

class RunStamp:
    """JSON ledger kept inside the source tree.

    Remembers whether the vendor patch went in and which values the last
    spoof pass wrote, so a kept tree can be re-spoofed without re-patching.
    A re-download deletes it along with the tree.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.data: dict = {}

    def load(self) -> dict:
        if self.path.exists():
            with open(self.path) as fh:
                try:
                    data = json.load(fh)
                except ValueError as exc:
                    _warn(f"Ignoring unreadable stamp {self.path}: {exc}")
                    data = {}
            if not isinstance(data, dict):
                _warn(f"Ignoring unreadable stamp {self.path}: not a JSON object")
                data = {}
            self.data = data
        return self.data

    def save(self) -> None:
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as fh:
            json.dump(self.data, fh, indent=2)
            fh.write("\n")
        tmp.rename(self.path)

    def start(self, qemu_version: str, vendor: str) -> None:
        previous = self.data
        self.data = {
            "started": _now(),
            "finished": None,
            "qemu_version": qemu_version,
            "vendor": vendor,
            "patch": previous.get("patch", PatchState.NOT_APPLIED.value),
            "patch_file": previous.get("patch_file"),
            "spoofed": [],
            "last_values": previous.get("last_values", {}),
        }

    def finish(self) -> None:
        self.data["finished"] = _now()

    def record(self, key: str, value) -> None:
        """Append *value* to a list key, or set a scalar key.

        Mutates in-memory only.  Call ``save()`` at stage boundaries.
        """
        if isinstance(self.data.get(key), list):
            self.data[key].append(value)
        else:
            self.data[key] = value

    def add_spoof(self, rec: SpoofRecord) -> None:
        self.record("spoofed", rec.to_dict())
        self.data.setdefault("last_values", {})[rec.field] = rec.new

    def patched_with(self, file_name: str) -> bool:
        return (self.data.get("patch") == PatchState.APPLIED.value
                and self.data.get("patch_file") == file_name)


# ── Pipeline ─────────────────────────────────────────────────────────────────

class Pipeline:

    def __init__(self, config: PhantomConfig, rng=None, manufacturer=None):
        self.config = config
        self.dry_run = config.dry_run
        self.release = SourceRelease(config.qemu_version)
        self.target = PatchTarget(config.vendor, self.release, config.patch_dir)
        if rng is None:
            rng = random.Random(config.seed) if config.seed is not None else _SYSTEM_RNG
        self.rng = rng
        self.manufacturer = manufacturer or self._probe_manufacturer
        self.audit = AuditLog(None if self.dry_run else config.log_path,
                              dry_run=self.dry_run)
        self.acquirer = SourceAcquirer(self.release, config.src_dir,
                                       self.run_cmd, self.prompt, self.dry_run)
        self.patcher = PatchApplier(self.target, self.acquirer.tree, self.run_cmd)
        self.stamp = RunStamp(self.acquirer.tree / STAMP_NAME)
        self.pass_counts = {}
        self.skip = set()
        if not config.packages:
            self.skip.add("packages")
        if not config.build:
            self.skip.add("build")
        self._t0 = None
        self._step = 0
        self._total = sum(1 for s in STAGES if s not in self.skip)

    # ── helpers ───────────────────────────────────────────────────────────

    def run_cmd(self, cmd, cwd=None, privileged: bool = False):
        """Execute *cmd* with output appended to the log, or print it if --dry-run.

        Returns the CompletedProcess, or None in dry-run mode.
        """
        if privileged:
            cmd = _privileged(cmd)
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.config.quiet:
            _info(f"Running: {pretty}")
        with open(self.config.log_path, "a") as log:
            log.write(f"$ {pretty}\n")
            log.flush()
            result = subprocess.run(cmd, cwd=cwd, stdout=log,
                                    stderr=subprocess.STDOUT)
        if result.returncode != 0:
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def prompt(self, question: str, default: bool = False) -> bool:
        """Yes/no question; --yes answers yes, --dry-run takes *default*."""
        if self.config.assume_yes:
            return True
        if self.dry_run:
            _dry(f"{question} → {'yes' if default else 'no'}")
            return default
        return prompt_yes_no(question)

    def package_installed(self, package: str) -> bool:
        check = PACKAGE_MANAGERS[self.config.distro.value]["check"] + [package]
        try:
            result = subprocess.run(check, capture_output=True)
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def _probe_manufacturer(self) -> str:
        if self.dry_run:
            _dry("dmidecode -t 4 (host manufacturer)")
            return "<host manufacturer>"
        return probe_dmi_manufacturer()

    def _save_stamp(self) -> None:
        if self.dry_run or not self.acquirer.tree.is_dir():
            return
        self.stamp.save()

    def _next_step(self, stage: str) -> None:
        """Print a stage banner with icon and step counter."""
        self._step += 1
        _section(STAGE_ICONS[stage], STAGE_LABELS[stage], self._step, self._total)

    # ── entry point ───────────────────────────────────────────────────────

    def run(self) -> int:
        """Run every stage in order; returns 0, or 2 if spoofing warned."""
        self._t0 = time.monotonic()
        _banner(f"{_I.ROCKET}  qemu-phantom — QEMU {self.release.version} "
                f"({self.config.vendor.value}) on {self.config.distro.value}")

        # Fail before downloading anything if the patch is missing.
        if not self.target.path.is_file():
            raise PatchNotFound(f"Patch file {self.target.path} not found")

        if not self.dry_run:
            self.config.log_path.parent.mkdir(parents=True, exist_ok=True)

        self.install_packages()
        self.acquire_source()
        self.patch_source()
        self.spoof_identities()

        if not self.dry_run:
            self.stamp.finish()
            self._save_stamp()

        self.build()
        self.cleanup()

        self._print_summary()
        return 2 if self.audit.warnings else 0

    # ── stages ────────────────────────────────────────────────────────────

    def install_packages(self) -> None:
        if "packages" in self.skip:
            _skip("Skipping dependency check (--skip-packages)")
            return

        self._next_step("packages")
        distro = self.config.distro.value
        missing = [pkg for pkg in REQUIRED_PACKAGES[distro]
                   if not self.package_installed(pkg)]

        if not missing:
            _info("All required packages for QEMU are already installed")
            return

        _warn(f"Missing packages: {', '.join(missing)}")
        if not self.prompt("Install the missing packages for QEMU?", default=True):
            raise PackageInstallError("The missing packages are required to continue")

        try:
            result = self.run_cmd(PACKAGE_MANAGERS[distro]["install"] + missing,
                                  privileged=True)
        except OSError as exc:
            raise PackageInstallError(f"Cannot run the package manager: {exc}") from exc
        if result is not None and result.returncode != 0:
            raise PackageInstallError(
                f"Failed to install some packages; see {self.config.log_path}"
            )
        _info(f"Installed: {', '.join(missing)}")

    def acquire_source(self) -> None:
        self._next_step("acquire")
        self.acquirer.acquire()
        self.stamp.load()
        self.stamp.start(self.release.version, self.config.vendor.value)
        self._save_stamp()

    def patch_source(self) -> None:
        self._next_step("patch")
        if self.stamp.patched_with(self.target.file_name):
            self.patcher.state = PatchState.APPLIED
            _skip(f"{self.target.file_name} already applied to this tree")
            return
        try:
            self.patcher.apply()
        finally:
            if self.patcher.state is not PatchState.NOT_APPLIED:
                self.stamp.record("patch", self.patcher.state.value)
                self.stamp.record("patch_file", self.target.file_name)
                self._save_stamp()

    def spoof_identities(self) -> None:
        self._next_step("spoof")
        _info("Spoofing all model & serial numbers")
        engine = SpoofEngine(
            self.acquirer.tree,
            self.release.version,
            TextMutator(self.audit, dry_run=self.dry_run),
            rng=self.rng,
            manufacturer=self.manufacturer,
            previous=self.stamp.data.get("last_values"),
        )
        for rec in engine.run():
            self.stamp.add_spoof(rec)
        self.pass_counts = engine.counts
        self._save_stamp()

    def build(self) -> None:
        if "build" in self.skip:
            _skip("Skipping build (--no-build)")
            return

        self._next_step("build")
        if not self.prompt("Build & install QEMU to /usr/local/bin?", default=True):
            _skip("Build declined")
            return

        tree = self.acquirer.tree
        try:
            result = self.run_cmd(["./configure"] + CONFIGURE_FLAGS, cwd=tree)
        except OSError as exc:
            raise BuildError(f"Cannot run ./configure in {tree}: {exc}") from exc
        if result is not None and result.returncode != 0:
            raise BuildError(f"configure failed; see {self.config.log_path}")

        jobs = os.cpu_count() or 1
        try:
            result = self.run_cmd(["make", "install", f"-j{jobs}"], cwd=tree,
                                  privileged=True)
        except OSError as exc:
            raise BuildError(f"Cannot run make: {exc}") from exc
        if result is not None and result.returncode != 0:
            raise BuildError(f"make install failed; see {self.config.log_path}")
        _info("Compilation finished!")

    def cleanup(self) -> None:
        self._next_step("cleanup")
        if self.prompt("Keep QEMU source to make repatching quicker?", default=True):
            _info(f"Keeping {self.acquirer.tree}")
            return
        _info(f"{_I.TRASH}  Removing {self.acquirer.archive.name} and "
              f"{self.acquirer.tree}")
        self.acquirer.cleanup()

    # ── Summary ───────────────────────────────────────────────────────────

    def _print_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        m, s = divmod(int(elapsed), 60)

        _banner(f"{_I.CHECK}  qemu-phantom complete ({m}m {s:02d}s)")

        for name in SpoofEngine.PASSES:
            count = self.pass_counts.get(name, 0)
            _info(f"{PASS_LABELS[name] + ':':<22}{count} mutation(s)")

        warnings = self.audit.warnings
        if warnings:
            print()
            _warn(f"{len(warnings)} spoof warning(s) — the build may still be "
                  f"fingerprintable:")
            for warning in warnings:
                _warn(f"  • {warning}")
        else:
            _info("No spoof warnings")

        print()
        if self.stamp.path.exists():
            _info(f"{_I.STAMP}  Stamp file: {self.stamp.path}")
        if not self.dry_run:
            _info(f"{_I.FILE}  Log file:   {self.config.log_path}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="qemu-phantom",
        description="Download, patch and de-fingerprint the QEMU source, then build it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  ./qemu_phantom.py --distro Fedora --log-file logs/qemu.log
  DISTRO=Arch LOG_FILE=qemu.log ./qemu_phantom.py -y
  ./qemu_phantom.py --dry-run --distro Debian --log-file qemu.log
  ./qemu_phantom.py --no-build --seed 42      # reproducible spoof values
""",
    )
    p.add_argument(
        "--distro", default=None,
        help="Arch, Debian or Fedora (default: $DISTRO, else /etc/os-release)",
    )
    p.add_argument(
        "--log-file", default=None,
        help="file receiving tool output and the spoof audit (default: $LOG_FILE)",
    )
    p.add_argument(
        "--qemu-version", default=QEMU_VERSION,
        help=f"QEMU release to build (default: {QEMU_VERSION})",
    )
    p.add_argument(
        "--src-dir", default=SRC_DIR,
        help=f"where the source archive and tree live (default: {SRC_DIR})",
    )
    p.add_argument(
        "--patch-dir", default=PATCH_DIR,
        help=f"directory holding <vendor>-qemu-<version>.patch (default: {PATCH_DIR})",
    )
    p.add_argument(
        "--skip-packages", action="store_true",
        help="do not check for or install build dependencies",
    )
    p.add_argument(
        "--no-build", action="store_true",
        help="stop after spoofing; do not configure or make install",
    )
    p.add_argument(
        "--seed", type=int, default=None,
        help="seed the spoof value generator (default: OS entropy)",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print commands and rewrites without executing them",
    )
    p.add_argument(
        "-y", "--yes", action="store_true",
        help="answer yes to every prompt (re-download, install, build, keep source)",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command output; show stage banners, rewrites, "
             "warnings and errors",
    )
    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args)
        status = Pipeline(config).run()
    except PhantomError as exc:
        _error(str(exc))
        _fatal("Cannot continue. Exiting.")
    except KeyboardInterrupt:
        print()
        _fatal("Interrupted.", code=130)

    sys.exit(status)


if __name__ == "__main__":
    main()

#!/usr/bin/python3
"""mediabox — converge an Ubuntu or Linux Mint host into a home media server.

Installs ttyd, File Browser, nginx, Samba and the Python backend, then wires
them together with generated systemd units, an nginx vhost and two Samba
shares.  Every resource is probed before it is touched, so running mediabox
again on a converged host changes nothing, and an interrupted run is finished
by simply running it again.
"""

import argparse
import os
import pwd
import re
import shlex
import shutil
import socket
import stat
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path

# ── Constants ────────────────────────────────────────────────────────────────

SUPPORTED_DISTROS = ("ubuntu", "linuxmint")
OS_RELEASE = Path("/etc/os-release")

# Snap binaries are not on root's PATH under sudo.
EXTRA_BIN_DIRS = ("/snap/bin",)

UNIT_DIR = Path("/etc/systemd/system")
SMB_CONF = Path("/etc/samba/smb.conf")
BACKUP_SUFFIX = ".orig"
NOSNAP_PREF = Path("/etc/apt/preferences.d/nosnap.pref")

NGINX_VHOST = Path("/etc/nginx/conf.d/mediabox.conf")
NGINX_DEFAULT_SITES = (
    Path("/etc/nginx/conf.d/default.conf"),
    Path("/etc/nginx/sites-enabled/default"),
    Path("/etc/nginx/sites-enabled/default.conf"),
)
NGINX_TEST = ["nginx", "-t"]

HTTP_PORT = 80
TTYD_PORT = 7681
FILEBROWSER_PORT = 8080
BACKEND_PORT = 8000

INTAKE_DIRNAME = "DCIM"
INTAKE_SUBDIRS = ("original", "processed", "meta")

INTAKE_SHARE = "DCIM"
HOME_SHARE = "Media"
# Share names written by earlier versions of the bootstrap script.
LEGACY_SHARES = ("Thymoeidolon",)

FILEBROWSER_INSTALLER = (
    "https://raw.githubusercontent.com/filebrowser/get/master/get.sh"
)

CLI_PREREQS = ["curl", "gnupg2", "ca-certificates", "lsb-release", "ubuntu-keyring"]

# Probe results
SATISFIED = "satisfied"
ABSENT = "absent"
PARTIAL = "partial"

# Outcome statuses
SKIPPED = "skipped"
APPLIED = "applied"
FAILED = "failed"
PLANNED = "planned"

# Collaborator exit-code verdicts
SUCCESS = "success"
ALREADY_SATISFIED = "already-satisfied"
FAILURE = "failure"

# Anything not listed is a failure.  snap exits 10 both for "already
# installed" races and for conflicting changes, so a 10 is only trusted once
# a re-probe shows the snap is really there (see Snap.install).
EXIT_CODES = {
    "apt-get": {0: SUCCESS},
    "snap": {0: SUCCESS, 10: ALREADY_SATISFIED},
    "get.sh": {0: SUCCESS},
}


def classify_exit(tool: str, code: int) -> str:
    """Map a collaborator exit code to success, already-satisfied or failure."""
    return EXIT_CODES.get(tool, {0: SUCCESS}).get(code, FAILURE)


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
    COGS     = "\uf085"   # cogs
    WRENCH   = "\uf0ad"   # wrench
    GLOBE    = "\uf0ac"   # globe
    FOLDER   = "\uf07b"   # folder
    USERS    = "\uf0c0"   # users
    KEY      = "\uf084"   # key
    DOWNLOAD = "\uf019"   # download
    TOGGLE   = "\uf205"   # toggle-on
    RECYCLE  = "\uf1b8"   # recycle (restart)
    SHARE    = "\uf1e0"   # share-alt

KIND_ICONS = {
    "package":         _I.PACKAGE,
    "config-file":     _I.WRENCH,
    "service-unit":    _I.COGS,
    "directory-tree":  _I.FOLDER,
    "text-block-set":  _I.SHARE,
    "permission":      _I.KEY,
    "ownership":       _I.USERS,
}

KIND_LABELS = {
    "package":         "Package",
    "config-file":     "Config File",
    "service-unit":    "Services",
    "directory-tree":  "Directory Tree",
    "text-block-set":  "Managed Sections",
    "permission":      "Permissions",
    "ownership":       "Ownership",
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

# TTY check runs once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{icon}  {title}  {tag}{_C.RESET}")


def _info(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK}{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN}{_C.RESET}  {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR}{_C.RESET}  {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP}  {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


# ── Errors ───────────────────────────────────────────────────────────────────

class MediaboxError(Exception):
    """Base class for everything that aborts a run."""


class PreflightError(MediaboxError):
    """Wrong privilege, unsupported distribution or missing static assets."""


class IdentityError(MediaboxError):
    """No unprivileged owner could be resolved for this run."""


class DeclarationError(MediaboxError):
    """The resource list has duplicate keys or requirements out of order."""


class ApplyError(MediaboxError):
    """An applier failed.  *key* and *stage* say where.

    *outcomes* carries per-item results when one applier converges several
    things at once, e.g. a batch of service units.
    """

    def __init__(self, message: str, key: str = None, stage: str = None,
                 outcomes=()):
        super().__init__(message)
        self.key = key
        self.stage = stage
        self.outcomes = list(outcomes)

    def __str__(self) -> str:
        where = "/".join(p for p in (self.key, self.stage) if p)
        msg = super().__str__()
        return f"[{where}] {msg}" if where else msg


# ── Preflight ────────────────────────────────────────────────────────────────

def detect_os(path=None) -> tuple:
    """Parse /etc/os-release → (os_id, ubuntu_codename)."""
    path = path or OS_RELEASE
    info = {}
    try:
        with open(path) as fh:
            for line in fh:
                line = line.strip()
                if "=" in line:
                    key, _, val = line.partition("=")
                    info[key] = val.strip('"')
    except FileNotFoundError:
        raise PreflightError(f"{path} not found — cannot detect OS") from None

    # Mint sets UBUNTU_CODENAME to the release it is built on.
    codename = info.get("UBUNTU_CODENAME") or info.get("VERSION_CODENAME", "")
    return info.get("ID", "unknown"), codename


def preflight(app_dir: Path, dry_run: bool = False, os_info=None) -> tuple:
    """Refuse to start unless the host can be converged at all.

    Nothing is touched before every check has passed.
    """
    if os.geteuid() != 0 and not dry_run:
        raise PreflightError("mediabox must run as root (try: sudo ./mediabox.py)")

    os_id, codename = os_info or detect_os()
    if os_id not in SUPPORTED_DISTROS:
        raise PreflightError(
            f"Detected {os_id} — mediabox supports "
            f"{', '.join(SUPPORTED_DISTROS)} only"
        )

    for required in (app_dir / "server.py", app_dir / "nginx" / "index.html"):
        if not required.is_file():
            raise PreflightError(f"{required} not found in the app directory")

    return os_id, codename


# ── Identity ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    """The unprivileged account a root run acts on behalf of."""
    user: str
    uid: int
    gid: int
    home: Path

    @property
    def data_root(self) -> Path:
        return self.home / INTAKE_DIRNAME

    @property
    def config_dir(self) -> Path:
        return self.home / ".config"

    @property
    def filebrowser_db(self) -> Path:
        return self.config_dir / "filebrowser.db"


def resolve_identity(explicit=None, environ=None, user_db=None) -> Identity:
    """Work out who the run is for: --user, then SUDO_USER, USER, LOGNAME.

    Falls back to the account of the current uid.  Root is never an
    acceptable answer; every owned path in the run derives from this.
    """
    environ = os.environ if environ is None else environ
    user_db = user_db or pwd.getpwnam

    candidates = (explicit, environ.get("SUDO_USER"),
                  environ.get("USER"), environ.get("LOGNAME"))
    name = next((c for c in candidates if c), None)
    if name is None:
        try:
            name = pwd.getpwuid(os.getuid()).pw_name
        except KeyError:
            raise IdentityError(
                "cannot determine the invoking user "
                "(no SUDO_USER/USER and no passwd entry for this uid)"
            ) from None

    try:
        entry = user_db(name)
    except KeyError:
        raise IdentityError(f"user '{name}' not found in the account database") from None

    if entry.pw_uid == 0:
        raise IdentityError(
            f"refusing to act on behalf of privileged user '{name}' "
            "(run via sudo from a normal account, or pass --user)"
        )
    if not entry.pw_dir:
        raise IdentityError(f"user '{name}' has no home directory in the account database")

    home = Path(entry.pw_dir)
    if not home.is_dir():
        raise IdentityError(f"home directory {home} for '{name}' does not exist")

    return Identity(name, entry.pw_uid, entry.pw_gid, home)


# ── Host ─────────────────────────────────────────────────────────────────────

class Host:
    """The live machine.

    Reads go straight to the filesystem and to read-only commands
    (``query``).  Mutations honour --dry-run and --quiet.  Tests substitute
    an in-memory subclass.
    """

    def __init__(self, dry_run: bool = False, quiet: bool = False,
                 search_path: str = None):
        self.dry_run = dry_run
        self.quiet = quiet
        if search_path is None:
            search_path = os.pathsep.join(
                [os.environ.get("PATH", os.defpath), *EXTRA_BIN_DIRS]
            )
        self.search_path = search_path

    # ── reads ─────────────────────────────────────────────────────────────

    def which(self, name: str):
        return shutil.which(name, path=self.search_path)

    def exists(self, path: Path) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: Path) -> bool:
        return path.is_dir()

    def read_text(self, path: Path) -> str:
        with open(path) as fh:
            return fh.read()

    def owner(self, path: Path) -> tuple:
        st = os.lstat(path)
        return st.st_uid, st.st_gid

    def mode(self, path: Path) -> int:
        return stat.S_IMODE(os.stat(path).st_mode)

    def walk(self, root: Path):
        """Yield *root* and everything below it, without following links."""
        yield root
        for dirpath, dirnames, filenames in os.walk(root):
            for name in dirnames + filenames:
                yield Path(dirpath) / name

    def port_open(self, port: int, address: str = "127.0.0.1") -> bool:
        try:
            with socket.create_connection((address, port), timeout=1.0):
                return True
        except OSError:
            return False

    def query(self, cmd) -> subprocess.CompletedProcess:
        """Run a read-only command.  Always executes, even under --dry-run."""
        return self._execute(cmd, capture=True)

    # ── mutations ─────────────────────────────────────────────────────────

    def run(self, cmd, check=True, capture=False, env=None):
        """Execute *cmd*, or print it if --dry-run.

        *env* is merged into the child's environment only; our own process
        environment is never changed.  With --quiet the "Running:" echo is
        suppressed; warnings and errors still print.
        """
        pretty = " ".join(
            [f"{k}={v}" for k, v in (env or {}).items()] + [str(c) for c in cmd]
        )
        if self.dry_run:
            _dry(pretty)
            return None
        if not self.quiet:
            _info(f"Running: {pretty}")
        result = self._execute(cmd, capture=capture, env=env)
        if result.returncode != 0:
            if check:
                raise subprocess.CalledProcessError(
                    result.returncode, cmd, result.stdout, result.stderr,
                )
            _warn(f"  ↳ exited {result.returncode}: {pretty}")
        return result

    def _execute(self, cmd, capture=False, env=None) -> subprocess.CompletedProcess:
        child_env = dict(os.environ, **env) if env else None
        try:
            return subprocess.run(
                [str(c) for c in cmd], env=child_env,
                capture_output=capture, text=True,
            )
        except FileNotFoundError as exc:
            return subprocess.CompletedProcess(cmd, 127, "", str(exc))

    def write_text(self, path: Path, content: str, mode: int = 0o644) -> None:
        if self.dry_run:
            _dry(f"write {path}")
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w") as fh:
            fh.write(content)
        os.chmod(tmp, mode)
        tmp.replace(path)
        if not self.quiet:
            _info(f"Wrote {path}")

    def copy(self, src: Path, dst: Path) -> None:
        if self.dry_run:
            _dry(f"cp {src} {dst}")
            return
        shutil.copy2(src, dst)
        _info(f"Backed up {src} → {dst}")

    def rename(self, src: Path, dst: Path) -> None:
        if self.dry_run:
            _dry(f"mv {src} {dst}")
            return
        os.replace(src, dst)
        _info(f"Renamed {src} → {dst}")

    def remove(self, path: Path) -> None:
        if self.dry_run:
            _dry(f"rm -f {path}")
            return
        os.unlink(path)
        _info(f"Removed {path}")

    def mkdir(self, path: Path) -> None:
        if self.dry_run:
            _dry(f"mkdir -p {path}")
            return
        path.mkdir(parents=True, exist_ok=True)
        _info(f"Created {path}")

    def chown(self, path: Path, uid: int, gid: int) -> None:
        if self.dry_run:
            _dry(f"chown {uid}:{gid} {path}")
            return
        os.lchown(path, uid, gid)

    def chmod(self, path: Path, mode: int) -> None:
        if self.dry_run:
            _dry(f"chmod {mode:o} {path}")
            return
        os.chmod(path, mode)
        if not self.quiet:
            _info(f"chmod {mode:o} {path}")


# ── State probe ──────────────────────────────────────────────────────────────

class StateProbe:
    """Read-only questions about the host.

    Every idempotency predicate gets one of these and nothing else, so a
    probe cannot install, write or start anything.  Dry-run depends on it.
    """

    def __init__(self, host: Host):
        self._host = host

    def binary(self, name: str):
        """Resolved path of *name* on the search path, or None."""
        return self._host.which(name)

    def exists(self, path: Path) -> bool:
        return self._host.exists(path)

    def is_dir(self, path: Path) -> bool:
        return self._host.is_dir(path)

    def read_text(self, path: Path):
        if not self._host.exists(path):
            return None
        return self._host.read_text(path)

    def owner(self, path: Path) -> tuple:
        return self._host.owner(path)

    def mode(self, path: Path) -> int:
        return self._host.mode(path)

    def walk(self, root: Path):
        return self._host.walk(root)

    def snap(self, name: str) -> bool:
        return self._host.query(["snap", "list", name]).returncode == 0

    def unit_registered(self, unit: str) -> bool:
        return self._host.query(["systemctl", "cat", unit]).returncode == 0

    def unit_enabled(self, unit: str) -> bool:
        return self._host.query(
            ["systemctl", "is-enabled", "--quiet", unit]).returncode == 0

    def unit_active(self, unit: str) -> bool:
        return self._host.query(
            ["systemctl", "is-active", "--quiet", unit]).returncode == 0

    def port_open(self, port: int) -> bool:
        return self._host.port_open(port)

    def primary_address(self) -> str:
        out = self._host.query(["hostname", "-I"])
        parts = (out.stdout or "").split() if out.returncode == 0 else []
        return parts[0] if parts else "127.0.0.1"


# ── Package managers ─────────────────────────────────────────────────────────

class Apt:
    """apt-get, with the index refreshed at most once per run."""

    def __init__(self, host: Host):
        self.host = host
        self._refreshed = False

    def refresh_index(self) -> None:
        if self._refreshed:
            return
        result = self.host.run(["apt-get", "update", "-qq"], check=False)
        if result is not None and result.returncode != 0:
            raise ApplyError(f"apt-get update exited {result.returncode}",
                             stage="refresh-index")
        self._refreshed = True

    def install(self, names) -> str:
        self.refresh_index()
        _info(f"{_I.DOWNLOAD}  Installing {', '.join(names)}")
        result = self.host.run(
            ["apt-get", "install", "-y", "--no-install-recommends", *names],
            check=False, env={"DEBIAN_FRONTEND": "noninteractive"},
        )
        if result is None:
            return SUCCESS
        verdict = classify_exit("apt-get", result.returncode)
        if verdict == FAILURE:
            raise ApplyError(
                f"apt-get install {' '.join(names)} exited {result.returncode}",
                stage="install",
            )
        return verdict


class Snap:
    def __init__(self, host: Host):
        self.host = host

    def install(self, name: str, classic: bool = False) -> str:
        cmd = ["snap", "install", name] + (["--classic"] if classic else [])
        result = self.host.run(cmd, check=False)
        if result is None:
            return SUCCESS
        verdict = classify_exit("snap", result.returncode)
        if verdict == ALREADY_SATISFIED:
            if StateProbe(self.host).snap(name):
                _warn(f"snap install {name} exited {result.returncode}; "
                      "snap is already present")
            else:
                verdict = FAILURE
        if verdict == FAILURE:
            raise ApplyError(f"snap install {name} exited {result.returncode}",
                             stage="install")
        return verdict


# ── Text block editor ────────────────────────────────────────────────────────

SECTION_HEADER = re.compile(r"^\[([^\]]+)\]$")


@dataclass
class TextSection:
    """A tagged region of a section-based text file.

    ``tag`` is None for the preamble before the first header.  Parsed
    sections keep their raw header and line endings so they serialize back
    byte for byte; new sections are built from bare content lines.
    """
    tag: str
    lines: list = field(default_factory=list)
    header: str = None


def parse_sections(text: str) -> list:
    sections = [TextSection(None)]
    for line in text.splitlines(keepends=True):
        match = SECTION_HEADER.match(line.rstrip("\r\n"))
        if match:
            sections.append(TextSection(match.group(1), header=line))
        else:
            sections[-1].lines.append(line)
    return sections


def render_sections(sections) -> str:
    out = []
    for section in sections:
        if section.tag is not None:
            header = section.header or f"[{section.tag}]\n"
            out.append(header if header.endswith("\n") else header + "\n")
        for line in section.lines:
            out.append(line if line.endswith("\n") else line + "\n")
    return "".join(out)


def apply_sections(text: str, managed_tags, new_sections) -> str:
    """Drop every section tagged in *managed_tags*, then append *new_sections*.

    Unmanaged sections pass through untouched and in order.  The kept text
    always ends in a blank line before the appended block; since the block's
    own tags are managed, a second pass strips and re-appends the identical
    block, so the result is a fixed point.
    """
    managed = set(managed_tags)
    kept = render_sections(s for s in parse_sections(text) if s.tag not in managed)
    if kept and not kept.endswith("\n\n"):
        kept += "\n"

    block = []
    for i, section in enumerate(new_sections):
        if i:
            block.append("\n")
        block.append(render_sections([section]))
    return kept + "".join(block)


class ManagedFile:
    """One config file edited in place, with a pristine backup taken once."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + BACKUP_SUFFIX)

    def ensure_backup(self, host: Host) -> bool:
        if host.exists(self.backup_path):
            return False
        host.copy(self.path, self.backup_path)
        return True

    def apply(self, host: Host, managed_tags, new_sections) -> bool:
        """Rewrite the managed sections.  Returns True when the file changed."""
        if not host.exists(self.path):
            raise ApplyError(f"{self.path} not found", stage="read")
        current = host.read_text(self.path)
        self.ensure_backup(host)

        updated = apply_sections(current, managed_tags, new_sections)
        if updated == current:
            _info(f"No change needed: {self.path}")
            return False
        host.write_text(self.path, updated, mode=host.mode(self.path))
        return True


def samba_shares(identity: Identity) -> list:
    def share(tag, path):
        return TextSection(tag, [
            f"   path = {path}",
            "   browsable = yes",
            "   read only = no",
            "   guest ok = yes",
            f"   force user = {identity.user}",
            "   guest only = yes",
            "   create mask = 0777",
            "   directory mask = 0777",
            "   force group = nogroup",
        ])

    return [share(INTAKE_SHARE, identity.data_root),
            share(HOME_SHARE, identity.home)]


# ── systemd ──────────────────────────────────────────────────────────────────

@dataclass
class ServiceSpec:
    """A generated systemd service, always rendered in full."""
    name: str
    description: str
    binary: str
    args: list
    user: str
    working_dir: Path
    restart_sec: int = 5
    restart: str = "on-failure"
    enabled: bool = True
    port: int = None

    @property
    def unit(self) -> str:
        return f"{self.name}.service"

    @property
    def unit_path(self) -> Path:
        return UNIT_DIR / self.unit

    def render(self, binary_path: str) -> str:
        exec_start = " ".join(shlex.quote(str(a)) for a in [binary_path, *self.args])
        return f"""[Unit]
Description={self.description}
After=network.target

[Service]
User={self.user}
WorkingDirectory={self.working_dir}
ExecStart={exec_start}
Restart={self.restart}
RestartSec={self.restart_sec}

[Install]
WantedBy=multi-user.target
"""


def service_state(probe: StateProbe, spec: ServiceSpec) -> str:
    binary = probe.binary(spec.binary)
    current = probe.read_text(spec.unit_path)
    if binary is None or current is None:
        return ABSENT
    if current != spec.render(binary) or not probe.unit_registered(spec.unit):
        return PARTIAL
    enabled = probe.unit_enabled(spec.unit)
    if spec.enabled and not (enabled and probe.unit_active(spec.unit)):
        return PARTIAL
    if not spec.enabled and enabled:
        return PARTIAL
    return SATISFIED


class Systemd:
    """The service supervisor.  Every failing call raises ApplyError."""

    def __init__(self, host: Host):
        self.host = host

    def _call(self, args, stage: str) -> None:
        result = self.host.run(["systemctl", *args], check=False)
        if result is not None and result.returncode != 0:
            raise ApplyError(
                f"systemctl {' '.join(args)} exited {result.returncode}",
                stage=stage,
            )

    def write_unit(self, spec: ServiceSpec, text: str) -> None:
        self.host.write_text(spec.unit_path, text)

    def reload_definitions(self) -> None:
        self._call(["daemon-reload"], "daemon-reload")

    def enable_and_start(self, units) -> None:
        _info(f"{_I.TOGGLE}  Enabling {', '.join(units)}")
        self._call(["enable", "--now", *units], "enable-and-start")

    def disable(self, units) -> None:
        self._call(["disable", *units], "disable")

    def restart(self, units) -> None:
        _info(f"{_I.RECYCLE}  Restarting {', '.join(units)}")
        self._call(["restart", *units], "restart")

    def reload(self, units) -> None:
        self._call(["reload-or-restart", *units], "reload")


class ServiceActivator:
    """Writes unit definitions and decides what gets started or restarted.

    Config-file resources queue restarts and reloads with ``notify``; they
    are issued together by ``flush`` once every resource has converged.
    """

    def __init__(self, systemd: Systemd, probe: StateProbe):
        self.systemd = systemd
        self.probe = probe
        self._restart = []
        self._reload = {}

    def activate(self, specs) -> list:
        """Converge *specs*: one daemon-reload, one batched enable --now."""
        changed = []
        for spec in specs:
            binary = self.probe.binary(spec.binary)
            if binary is None:
                raise ApplyError(f"{spec.binary} not found on PATH",
                                 key=spec.unit, stage="render")
            text = spec.render(binary)
            if self.probe.read_text(spec.unit_path) != text:
                self.systemd.write_unit(spec, text)
                changed.append(spec.unit)
        if changed:
            self.systemd.reload_definitions()

        enabled = {s.unit for s in specs if self.probe.unit_enabled(s.unit)}
        running = {s.unit for s in specs if self.probe.unit_active(s.unit)}
        start = [s.unit for s in specs
                 if s.enabled and not (s.unit in enabled and s.unit in running)]
        # enable --now leaves a running unit alone; new definitions need a restart.
        restart = [s.unit for s in specs
                   if s.enabled and s.unit in changed and s.unit in running]
        disable = [s.unit for s in specs if not s.enabled and s.unit in enabled]

        if start:
            try:
                self.systemd.enable_and_start(start)
            except ApplyError as exc:
                failed = [u for u in start if not self.probe.unit_active(u)] or start
                raise ApplyError(
                    f"failed to start {', '.join(failed)}", stage="enable-and-start",
                    outcomes=self._outcomes(specs, changed + start, failed),
                ) from exc
        if restart:
            self.systemd.restart(restart)
        if disable:
            self.systemd.disable(disable)

        return self._outcomes(specs, changed + start + disable, [])

    @staticmethod
    def _outcomes(specs, touched, failed) -> list:
        outcomes = []
        for spec in specs:
            detail = ""
            if spec.unit in failed:
                status, detail = FAILED, "not active after enable --now"
            elif spec.unit in touched:
                status = APPLIED
            else:
                status = SKIPPED
            outcomes.append(Outcome(spec.unit, "service-unit", status, detail))
        return outcomes

    def notify(self, names, action: str = "restart", validate=None) -> None:
        """Queue a restart or a (validated) reload.  A restart wins."""
        for name in names:
            if action == "restart":
                if name not in self._restart:
                    self._restart.append(name)
                self._reload.pop(name, None)
            elif name not in self._restart:
                self._reload.setdefault(name, validate)

    def pending(self) -> bool:
        return bool(self._restart or self._reload)

    def flush(self) -> list:
        restart, reload = self._restart, self._reload
        self._restart, self._reload = [], {}

        if restart:
            self.systemd.restart(restart)
        for name, validate in reload.items():
            if validate:
                result = self.systemd.host.run(validate, check=False)
                if result is not None and result.returncode != 0:
                    raise ApplyError(
                        f"{' '.join(validate)} failed; not reloading {name}",
                        key=name, stage="validate",
                    )
            self.systemd.reload([name])
        return restart + list(reload)


# ── Resources ────────────────────────────────────────────────────────────────

@dataclass
class Outcome:
    key: str
    kind: str
    status: str
    detail: str = ""


@dataclass
class Context:
    """Everything an applier may use.  Built once per run."""
    host: Host
    identity: Identity
    probe: StateProbe
    apt: Apt
    snap: Snap
    systemd: Systemd
    activator: ServiceActivator


def build_context(host: Host, identity: Identity) -> Context:
    probe = StateProbe(host)
    systemd = Systemd(host)
    return Context(
        host=host,
        identity=identity,
        probe=probe,
        apt=Apt(host),
        snap=Snap(host),
        systemd=systemd,
        activator=ServiceActivator(systemd, probe),
    )


class Resource:
    """One declared piece of desired state.

    ``probe`` answers satisfied/absent/partial from a StateProbe only;
    ``apply`` does the minimal work to converge and may return a short
    detail string for the summary.
    """

    kind = "resource"

    def __init__(self, key: str, requires=()):
        self.key = key
        self.requires = tuple(requires)

    @property
    def title(self) -> str:
        return f"{KIND_LABELS.get(self.kind, self.kind)}: {self.key}"

    def probe(self, probe: StateProbe) -> str:
        raise NotImplementedError

    def apply(self, ctx: Context):
        raise NotImplementedError


class AptPackage(Resource):
    """Distro packages, checked by the binaries they provide."""

    kind = "package"

    def __init__(self, key, packages, binaries=None, requires=()):
        super().__init__(key, requires)
        self.packages = list(packages)
        self.binaries = list(binaries or [key])

    def probe(self, probe):
        found = [b for b in self.binaries if probe.binary(b)]
        if len(found) == len(self.binaries):
            return SATISFIED
        return PARTIAL if found else ABSENT

    def apply(self, ctx):
        return ctx.apt.install(self.packages)


class SnapdPackage(AptPackage):
    """snapd, after lifting Linux Mint's apt pin that blocks it."""

    def apply(self, ctx):
        if ctx.host.exists(NOSNAP_PREF):
            _info(f"Unblocking snap (renaming {NOSNAP_PREF})")
            ctx.host.rename(NOSNAP_PREF, NOSNAP_PREF.with_name(NOSNAP_PREF.name + ".bak"))
        return super().apply(ctx)


class SnapPackage(Resource):
    kind = "package"

    def __init__(self, key, snap, classic=False, binary=None, requires=()):
        super().__init__(key, requires)
        self.snap = snap
        self.classic = classic
        self.binary = binary or snap

    def probe(self, probe):
        if not probe.snap(self.snap):
            return ABSENT
        return SATISFIED if probe.binary(self.binary) else PARTIAL

    def apply(self, ctx):
        return ctx.snap.install(self.snap, classic=self.classic)


class ScriptPackage(Resource):
    """A binary installed by an upstream shell installer, run as the identity.

    Running it as the identity keeps the installer's cache and database
    under the user's ~/.config rather than root's.
    """

    kind = "package"

    def __init__(self, key, url, identity, binary=None, requires=()):
        super().__init__(key, requires)
        self.url = url
        self.identity = identity
        self.binary = binary or key

    def probe(self, probe):
        return SATISFIED if probe.binary(self.binary) else ABSENT

    def apply(self, ctx):
        result = ctx.host.run(
            ["sudo", "-u", self.identity.user, "-H", "bash", "-c",
             f"curl -fsSL {self.url} | bash"],
            check=False,
        )
        if result is None:
            return SUCCESS
        if classify_exit("get.sh", result.returncode) == FAILURE:
            raise ApplyError(f"installer {self.url} exited {result.returncode}",
                             stage="install")
        if not ctx.probe.binary(self.binary):
            raise ApplyError(f"installer finished but {self.binary} is not on PATH",
                             stage="verify")
        return SUCCESS


class DirectoryTree(Resource):
    """A root directory and its subdirectories, owned by the identity."""

    kind = "directory-tree"

    def __init__(self, key, root, subdirs, identity, requires=()):
        super().__init__(key, requires)
        self.root = Path(root)
        self.subdirs = tuple(subdirs)
        self.identity = identity

    def paths(self) -> list:
        return [self.root] + [self.root / sub for sub in self.subdirs]

    def probe(self, probe):
        owner = (self.identity.uid, self.identity.gid)
        present = [p for p in self.paths() if probe.is_dir(p)]
        owned = [p for p in present if probe.owner(p) == owner]
        if len(owned) == len(self.paths()):
            return SATISFIED
        return PARTIAL if present else ABSENT

    def apply(self, ctx):
        owner = (self.identity.uid, self.identity.gid)
        for path in self.paths():
            if ctx.host.is_dir(path):
                _skip(f"Already exists: {path}")
            else:
                ctx.host.mkdir(path)
            if ctx.host.owner(path) != owner:
                ctx.host.chown(path, *owner)
        return f"{len(self.paths())} directories under {self.root}"


class PathMode(Resource):
    """Permission bits that must be set on an existing path."""

    kind = "permission"

    def __init__(self, key, path, bits, requires=()):
        super().__init__(key, requires)
        self.path = Path(path)
        self.bits = bits

    def probe(self, probe):
        if not probe.exists(self.path):
            return ABSENT
        return SATISFIED if probe.mode(self.path) & self.bits == self.bits else PARTIAL

    def apply(self, ctx):
        if not ctx.host.exists(self.path):
            raise ApplyError(f"{self.path} does not exist", stage="chmod")
        ctx.host.chmod(self.path, ctx.host.mode(self.path) | self.bits)


class ConfigFile(Resource):
    """A generated file, overwritten in full whenever its bytes differ."""

    kind = "config-file"

    def __init__(self, key, path, content, mode=0o644, notify=(),
                 action="reload", validate=None, requires=()):
        super().__init__(key, requires)
        self.path = Path(path)
        self.content = content
        self.mode = mode
        self.notify = tuple(notify)
        self.action = action
        self.validate = validate

    def probe(self, probe):
        current = probe.read_text(self.path)
        if current is None:
            return ABSENT
        return SATISFIED if current == self.content else PARTIAL

    def apply(self, ctx):
        ctx.host.write_text(self.path, self.content, mode=self.mode)
        ctx.activator.notify(self.notify, self.action, self.validate)


class AbsentFiles(Resource):
    """Files (or links) that must not exist, e.g. vendor default sites."""

    kind = "config-file"

    def __init__(self, key, paths, notify=(), action="reload",
                 validate=None, requires=()):
        super().__init__(key, requires)
        self.paths = [Path(p) for p in paths]
        self.notify = tuple(notify)
        self.action = action
        self.validate = validate

    def probe(self, probe):
        return PARTIAL if any(probe.exists(p) for p in self.paths) else SATISFIED

    def apply(self, ctx):
        removed = []
        for path in self.paths:
            if ctx.host.exists(path):
                ctx.host.remove(path)
                removed.append(str(path))
        ctx.activator.notify(self.notify, self.action, self.validate)
        return ", ".join(removed)


class TextBlockSet(Resource):
    """Engine-owned sections of a shared config file."""

    kind = "text-block-set"

    def __init__(self, key, path, managed_tags, sections, notify=(), requires=()):
        super().__init__(key, requires)
        self.file = ManagedFile(path)
        self.managed_tags = frozenset(managed_tags)
        self.sections = list(sections)
        self.notify = tuple(notify)
        missing = {s.tag for s in self.sections} - self.managed_tags
        if missing:
            raise DeclarationError(
                f"'{key}' appends sections it does not manage: {', '.join(sorted(missing))}"
            )

    def probe(self, probe):
        current = probe.read_text(self.file.path)
        if current is None:
            return ABSENT
        if apply_sections(current, self.managed_tags, self.sections) != current:
            return PARTIAL
        return SATISFIED if probe.exists(self.file.backup_path) else PARTIAL

    def apply(self, ctx):
        if self.file.apply(ctx.host, self.managed_tags, self.sections):
            ctx.activator.notify(self.notify, "restart")
            return f"rewrote [{'], ['.join(s.tag for s in self.sections)}]"
        return "backup taken"


class ServiceSet(Resource):
    """Generated units handed to the ServiceActivator as one batch."""

    kind = "service-unit"

    def __init__(self, key, specs, requires=()):
        super().__init__(key, requires)
        self.specs = list(specs)

    def probe(self, probe):
        states = [service_state(probe, spec) for spec in self.specs]
        if all(s == SATISFIED for s in states):
            return SATISFIED
        return ABSENT if all(s == ABSENT for s in states) else PARTIAL

    def apply(self, ctx):
        outcomes = ctx.activator.activate(self.specs)
        return ", ".join(f"{o.key} {o.status}" for o in outcomes)


class OwnershipSweep(Resource):
    """Hand everything under *paths* back to the identity; missing paths are fine."""

    kind = "ownership"

    def __init__(self, key, paths, identity, requires=()):
        super().__init__(key, requires)
        self.paths = [Path(p) for p in paths]
        self.identity = identity

    def _strays(self, probe) -> list:
        owner = (self.identity.uid, self.identity.gid)
        strays = []
        for root in self.paths:
            if not probe.exists(root):
                continue
            for path in probe.walk(root):
                try:
                    if probe.owner(path) != owner:
                        strays.append(path)
                except FileNotFoundError:
                    # removed while walking
                    continue
        return strays

    def probe(self, probe):
        return PARTIAL if self._strays(probe) else SATISFIED

    def apply(self, ctx):
        returned = 0
        for path in self._strays(ctx.probe):
            try:
                ctx.host.chown(path, self.identity.uid, self.identity.gid)
            except FileNotFoundError:
                continue
            returned += 1
        return f"{returned} paths returned to {self.identity.user}"


# ── Declarations ─────────────────────────────────────────────────────────────

NGINX_VHOST_TEMPLATE = """\
server {
    listen 80 default_server;
    listen [::]:80 default_server;

    # ---------- static assets ----------
    root __STATIC_ROOT__;
    index index.html;

    location / {
        try_files $uri $uri/ @backend;
    }

    # ---------- Python backend ----------
    location @backend {
        proxy_pass http://127.0.0.1:__BACKEND_PORT__;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    }

    client_max_body_size 20m;
    add_header X-Frame-Options DENY;
}
"""


def nginx_vhost(static_root: Path) -> str:
    return (NGINX_VHOST_TEMPLATE
            .replace("__STATIC_ROOT__", str(static_root))
            .replace("__BACKEND_PORT__", str(BACKEND_PORT)))


def service_specs(identity: Identity, app_dir: Path) -> list:
    home = identity.home
    return [
        ServiceSpec(
            "ttyd", f"ttyd – Terminal over Web (port {TTYD_PORT})", "ttyd",
            ["--writable", "--port", str(TTYD_PORT), "/bin/bash", "-l"],
            user=identity.user, working_dir=home, port=TTYD_PORT,
        ),
        ServiceSpec(
            "filebrowser",
            f"File Browser (serving {home} on port {FILEBROWSER_PORT})",
            "filebrowser",
            ["-r", str(home), "--address", "0.0.0.0",
             "--port", str(FILEBROWSER_PORT),
             "--database", str(identity.filebrowser_db)],
            user=identity.user, working_dir=home, port=FILEBROWSER_PORT,
        ),
        ServiceSpec(
            "mediabox-backend",
            f"mediabox backend (server.py on port {BACKEND_PORT})", "python3",
            ["-u", "server.py", "--port", str(BACKEND_PORT)],
            user=identity.user, working_dir=app_dir, restart_sec=3,
            port=BACKEND_PORT,
        ),
    ]


def declare_resources(identity: Identity, app_dir: Path) -> list:
    """The fixed, ordered pipeline.  Later entries consume earlier outputs."""
    specs = service_specs(identity, app_dir)
    return [
        DirectoryTree("intake-tree", identity.data_root, INTAKE_SUBDIRS, identity),
        SnapdPackage("snapd", ["snapd"], binaries=["snap"]),
        AptPackage("cli-prereqs", CLI_PREREQS, binaries=["curl", "gpg"]),
        SnapPackage("ttyd", "ttyd", classic=True, requires=("snapd",)),
        ScriptPackage("filebrowser", FILEBROWSER_INSTALLER, identity,
                      requires=("cli-prereqs",)),
        AptPackage("nginx", ["nginx"]),
        AptPackage("samba", ["samba"], binaries=["smbd"]),
        AptPackage("python3", ["python3"]),
        PathMode("home-guest-read", identity.home, 0o005),
        TextBlockSet(
            "samba-shares", SMB_CONF,
            {INTAKE_SHARE, HOME_SHARE, *LEGACY_SHARES},
            samba_shares(identity),
            notify=("smbd", "nmbd"),
            requires=("samba", "intake-tree"),
        ),
        ServiceSet("services", specs,
                   requires=("ttyd", "filebrowser", "python3")),
        AbsentFiles("nginx-default-site", NGINX_DEFAULT_SITES,
                    notify=("nginx",), validate=NGINX_TEST,
                    requires=("nginx",)),
        ConfigFile("nginx-vhost", NGINX_VHOST, nginx_vhost(app_dir / "nginx"),
                   notify=("nginx",), validate=NGINX_TEST,
                   requires=("nginx", "services")),
        OwnershipSweep("ownership", [identity.data_root, identity.config_dir],
                       identity, requires=("intake-tree",)),
    ]


# ── Convergence engine ───────────────────────────────────────────────────────

class Converger:
    """Strict linear pass: probe, skip if satisfied, otherwise apply.

    The first failure stops the run.  Restarts already queued by converged
    config files are still issued, so re-running is the whole recovery path:
    anything that converged before the failure is skipped next time.
    """

    def __init__(self, ctx: Context):
        self.ctx = ctx

    @staticmethod
    def validate(resources) -> None:
        seen = set()
        for resource in resources:
            if resource.key in seen:
                raise DeclarationError(f"duplicate resource key '{resource.key}'")
            missing = [k for k in resource.requires if k not in seen]
            if missing:
                raise DeclarationError(
                    f"'{resource.key}' requires {', '.join(missing)}, "
                    "which must be declared before it"
                )
            seen.add(resource.key)

    def converge(self, resources) -> list:
        self.validate(resources)
        outcomes = []
        total = len(resources)
        for step, resource in enumerate(resources, 1):
            _section(KIND_ICONS.get(resource.kind, _I.WRENCH), resource.title,
                     step, total)
            step_outcomes = self._converge_one(resource)
            outcomes.extend(step_outcomes)
            if step_outcomes[0].status == FAILED:
                break

        if self.ctx.activator.pending():
            outcomes.append(self._flush())
        return outcomes

    def _converge_one(self, resource: Resource) -> list:
        """Outcome for *resource*, followed by per-item results of a failed batch."""
        state = resource.probe(self.ctx.probe)
        if state == SATISFIED:
            _skip(f"{resource.key}: already satisfied")
            return [Outcome(resource.key, resource.kind, SKIPPED)]

        if self.ctx.host.dry_run:
            _dry(f"would converge {resource.key} (currently {state})")
            return [Outcome(resource.key, resource.kind, PLANNED, state)]

        try:
            detail = resource.apply(self.ctx)
        except ApplyError as exc:
            exc.key = exc.key or resource.key
            return [self._failed(resource, exc.stage or "apply", exc), *exc.outcomes]
        except subprocess.CalledProcessError as exc:
            return [self._failed(resource, "command", exc)]
        except OSError as exc:
            return [self._failed(resource, "filesystem", exc)]

        _info(f"{resource.key}: converged")
        return [Outcome(resource.key, resource.kind, APPLIED, detail or "")]

    def _failed(self, resource: Resource, stage: str, exc: Exception) -> Outcome:
        _error(f"{resource.key} failed during {stage}: {exc}")
        return Outcome(resource.key, resource.kind, FAILED, f"{stage}: {exc}")

    def _flush(self) -> Outcome:
        _info(f"{_I.RECYCLE}  Restarting services with changed configuration")
        try:
            names = self.ctx.activator.flush()
        except ApplyError as exc:
            _error(f"restart failed during {exc.stage}: {exc}")
            return Outcome("services:restart", "service-unit", FAILED,
                           f"{exc.stage}: {exc}")
        return Outcome("services:restart", "service-unit", APPLIED, ", ".join(names))


# ── Summary ──────────────────────────────────────────────────────────────────

def print_summary(outcomes, specs, probe: StateProbe, elapsed: float,
                  dry_run: bool = False) -> None:
    m, s = divmod(int(elapsed), 60)
    failed = [o for o in outcomes if o.status == FAILED]

    if failed:
        _banner(f"{_I.ERROR}  mediabox stopped ({m}m {s:02d}s)")
    else:
        _banner(f"{_I.CHECK}  mediabox complete ({m}m {s:02d}s)")

    counts = {}
    for o in outcomes:
        counts[o.status] = counts.get(o.status, 0) + 1
    parts = [f"{counts[k]} {k}" for k in (APPLIED, PLANNED, SKIPPED, FAILED)
             if counts.get(k)]
    _info(f"Resources:  {', '.join(parts) if parts else 'none'}")

    for o in outcomes:
        if o.status == APPLIED and o.detail:
            _info(f"{o.key}: {o.detail}")

    if failed:
        first = failed[0]
        _error(f"{first.key}: {first.detail}")
        for o in failed[1:]:
            _error(f"  {o.key}: {o.detail}")
        _error("Fix the cause and run mediabox again; converged steps are skipped.")
        return
    if dry_run:
        return

    address = probe.primary_address()
    print()
    _info(f"{_I.GLOBE}  nginx        → http://{address}/")
    for spec in specs:
        if spec.port is None:
            continue
        url = f"http://{address}:{spec.port}"
        if probe.port_open(spec.port):
            _info(f"{spec.name:<17} → {url}")
        else:
            _warn(f"{spec.name:<17} → {url}  (not answering yet)")
    _info(f"Samba shares [{INTAKE_SHARE}] and [{HOME_SHARE}] on {address}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mediabox",
        description="Converge an Ubuntu or Linux Mint host into a home media server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
examples:
  sudo ./mediabox.py                      # converge, acting for $SUDO_USER
  sudo ./mediabox.py --user alice         # converge for an explicit account
  sudo ./mediabox.py -q                   # quiet — step banners + errors only
  ./mediabox.py --dry-run                 # probe and report, change nothing
""",
    )
    p.add_argument(
        "--user",
        help="account the services run as (default: $SUDO_USER)",
    )
    p.add_argument(
        "--app-dir", default=str(Path(__file__).resolve().parent),
        help="directory holding server.py and the nginx/ static root "
             "(default: next to this script)",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="probe every resource and report what would change",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command and per-file output; show only step "
             "banners, warnings, and errors",
    )
    return p


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    app_dir = Path(args.app_dir).resolve()

    try:
        os_id, codename = preflight(app_dir, dry_run=args.dry_run)
        identity = resolve_identity(args.user)
    except MediaboxError as exc:
        _error(str(exc))
        sys.exit(1)

    t0 = time.monotonic()
    _banner(f"{_I.ROCKET}  mediabox — {os_id} {codename}, "
            f"acting for {identity.user}")

    host = Host(dry_run=args.dry_run, quiet=args.quiet)
    ctx = build_context(host, identity)
    try:
        resources = declare_resources(identity, app_dir)
        outcomes = Converger(ctx).converge(resources)
    except DeclarationError as exc:
        _error(str(exc))
        sys.exit(1)

    print_summary(outcomes, service_specs(identity, app_dir), ctx.probe,
                  time.monotonic() - t0, dry_run=args.dry_run)

    if any(o.status == FAILED for o in outcomes):
        sys.exit(1)


if __name__ == "__main__":
    main()

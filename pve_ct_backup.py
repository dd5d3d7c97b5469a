#!/usr/bin/env python3
"""
pve-ct-backup — Nightly vzdump backups of LXC containers on a Proxmox HA cluster.

Key features:
- HA-aware: a running container is only backed up by the node that can exec into it
- Per-container lock files (<node>:<pid>:<timestamp>) with a 4 hour staleness expiry
- Leftover vzdump ZFS snapshots from a failed run are destroyed before a new backup
- vzdump in snapshot mode, bounded to 3 hours, container always unlocked afterwards
- Pre-backup run state is restored and a running container is health-checked,
  with an escalating start -> stop+start ladder
- Artifacts are moved to target storage (S3 gateway / NFS) with verified retries
- Retention pruning and e-mail notifications through mail(1)
- Dry-run: full decision logic and logging, no side effects
"""

import argparse
import contextlib
import dataclasses
import datetime as dt
import enum
import logging
import logging.handlers
import os
import re
import shlex
import shutil
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

try:
    import yaml
except Exception:
    print("Missing dependency: pyyaml. Install with: pip install pyyaml", file=sys.stderr)
    sys.exit(2)

try:
    from dotenv import dotenv_values
except Exception:
    print("Missing dependency: python-dotenv. Install with: pip install python-dotenv", file=sys.stderr)
    sys.exit(2)

__version__ = "1.0.0"

# =========================
# Constants
# =========================

BACKUP_TIMEOUT_SECONDS = 3 * 60 * 60
EXEC_PROBE_TIMEOUT_SECONDS = 10
LOCK_STALE_SECONDS = 4 * 60 * 60

HEALTH_MAX_ATTEMPTS = 3
SETTLE_SECONDS = 5
MIN_PROCESS_COUNT = 3
DISK_CRITICAL_PERCENT = 95

UPLOAD_MAX_ATTEMPTS = 3
UPLOAD_BACKOFF_SECONDS = 60

STALE_SNAPSHOT_NAME = "vzdump"
ZFS_DATASET_PATTERNS = (
    "rpool/data/subvol-{ctid}-disk-{disk}",
    "rpool/subvol-{ctid}-disk-{disk}",
    "local-zfs/subvol-{ctid}-disk-{disk}",
)
ZFS_MAX_DISKS = 4

ARTIFACT_EXTENSIONS = (".tar", ".gz", ".lzo", ".zst", ".vma", ".log")
_ARTIFACT_RE = re.compile(r"^vzdump-lxc-(?P<ctid>[^-]+)-(?P<stamp>\d{4}_\d{2}_\d{2}-\d{2}_\d{2}_\d{2})\.")
_ARTIFACT_STAMP_FORMAT = "%Y_%m_%d-%H_%M_%S"

KIND_BACKUP_TIMEOUT = "backup-timeout"
KIND_BACKUP_FAILED = "backup-failed"
KIND_RESTORE_FAILED = "restore-failed"
KIND_UPLOAD_FAILED = "upload-failed"
KIND_UNEXPECTED = "unexpected-error"

# =========================
# Errors & result types
# =========================

class BackupRunnerError(Exception):
    pass

class ConfigError(BackupRunnerError):
    pass

class PreconditionError(BackupRunnerError):
    pass

class Locality(enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"
    ABSENT = "absent"

class ContainerState(enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

class Verdict(enum.Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"

@dataclasses.dataclass(frozen=True)
class Outcome:
    """Result of one pipeline step. `kind` labels the failure for notifications."""
    ok: bool
    reason: str = ""
    kind: str = ""

    @classmethod
    def success(cls) -> "Outcome":
        return cls(True)

    @classmethod
    def failure(cls, reason: str, kind: str = "") -> "Outcome":
        return cls(False, reason, kind)

# =========================
# Configuration
# =========================

DEFAULT_LOCAL_BACKUP_DIR = Path("/var/lib/vz/dump")
DEFAULT_LOCK_DIR = Path("/tmp")

_CONFIG_KEYS = (
    "LOCAL_BACKUP_DIR", "TARGET_BACKUP_DIR", "CONTAINERS", "DAYS_TO_KEEP",
    "EMAIL_RECIPIENT", "COMPRESSION", "CHECK_MOUNTPOINT", "DRY_RUN",
    "SKIP_EXISTING_BACKUP", "DEEP_HEALTH_CHECK", "LOCK_DIR", "LOG_LEVEL", "LOG_FILE",
)

_TRUE_WORDS = {"1", "true", "yes", "on"}
_FALSE_WORDS = {"0", "false", "no", "off", ""}

@dataclasses.dataclass(frozen=True)
class Config:
    containers: Tuple[str, ...] = ()
    local_backup_dir: Path = DEFAULT_LOCAL_BACKUP_DIR
    target_backup_dir: Optional[Path] = None  # defaults to local_backup_dir
    days_to_keep: int = 7
    email_recipient: str = "root"
    compression: str = "gzip"
    check_mountpoint: bool = False
    dry_run: bool = False
    skip_existing_today: bool = True
    deep_health_check: bool = True
    lock_dir: Path = DEFAULT_LOCK_DIR
    log_level: str = "INFO"
    log_file: Optional[Path] = None
    node_name: str = dataclasses.field(default_factory=socket.gethostname)

    def __post_init__(self):
        if self.target_backup_dir is None:
            object.__setattr__(self, "target_backup_dir", self.local_backup_dir)

    @property
    def retention(self) -> dt.timedelta:
        return dt.timedelta(days=self.days_to_keep)

    @property
    def uses_separate_target(self) -> bool:
        return os.path.normpath(str(self.target_backup_dir)) != os.path.normpath(str(self.local_backup_dir))

def parse_bool(value, key: str) -> bool:
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ConfigError(f"{key}: expected a boolean, got {value!r}")

def parse_container_list(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = re.split(r"[,\s]+", str(value))
    return tuple(i.strip() for i in items if i.strip())

def _parse_days(value) -> int:
    if value is None or str(value).strip() == "":
        return 7
    try:
        days = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"DAYS_TO_KEEP: expected a whole number of days, got {value!r}") from None
    if days < 0:
        raise ConfigError(f"DAYS_TO_KEEP: must not be negative, got {days}")
    return days

def _config_from_mapping(raw: Mapping[str, object], dry_run: bool) -> Config:
    local_dir = Path(str(raw.get("LOCAL_BACKUP_DIR") or DEFAULT_LOCAL_BACKUP_DIR))
    target = raw.get("TARGET_BACKUP_DIR")
    log_file = raw.get("LOG_FILE")
    return Config(
        containers=parse_container_list(raw.get("CONTAINERS")),
        local_backup_dir=local_dir,
        target_backup_dir=Path(str(target)) if target else local_dir,
        days_to_keep=_parse_days(raw.get("DAYS_TO_KEEP")),
        email_recipient=str(raw.get("EMAIL_RECIPIENT") or "root"),
        compression=str(raw.get("COMPRESSION") or "gzip"),
        check_mountpoint=parse_bool(raw.get("CHECK_MOUNTPOINT", False), "CHECK_MOUNTPOINT"),
        dry_run=dry_run or parse_bool(raw.get("DRY_RUN", False), "DRY_RUN"),
        skip_existing_today=parse_bool(raw.get("SKIP_EXISTING_BACKUP", True), "SKIP_EXISTING_BACKUP"),
        deep_health_check=parse_bool(raw.get("DEEP_HEALTH_CHECK", True), "DEEP_HEALTH_CHECK"),
        lock_dir=Path(str(raw.get("LOCK_DIR") or DEFAULT_LOCK_DIR)),
        log_level=str(raw.get("LOG_LEVEL") or "INFO").upper(),
        log_file=Path(str(log_file)) if log_file else None,
    )

def load_config(env_file=None, config_file=None, environ: Optional[Mapping[str, str]] = None,
                dry_run: bool = False) -> Config:
    """
    Build the run configuration once. Precedence, lowest first:
    defaults, process environment, .env file, YAML config file, --dry-run.
    """
    environ = os.environ if environ is None else environ
    raw: Dict[str, object] = {k: environ[k] for k in _CONFIG_KEYS if k in environ}

    if env_file:
        env_path = Path(env_file)
        if not env_path.is_file():
            raise ConfigError(f"Env file not found: {env_path}")
        for key, value in dotenv_values(env_path).items():
            if value is not None:
                raw[key.upper()] = value

    if config_file:
        cfg_path = Path(config_file)
        if not cfg_path.is_file():
            raise ConfigError(f"Config not found: {cfg_path}")
        try:
            data = yaml.safe_load(cfg_path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {cfg_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{cfg_path}: top level must be a mapping")
        for key, value in data.items():
            raw[str(key).upper()] = value

    return _config_from_mapping(raw, dry_run)

def default_env_file() -> Optional[Path]:
    """The .env beside the script, if there is one."""
    p = Path(__file__).resolve().parent / ".env"
    return p if p.is_file() else None

# =========================
# Logging
# =========================

_installed_handlers: List[logging.Handler] = []

def setup_logging(level_name: str = "INFO", log_file: Optional[Path] = None):
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    for h in _installed_handlers:
        root.removeHandler(h)
        h.close()
    _installed_handlers.clear()

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    root.addHandler(ch)
    _installed_handlers.append(ch)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logging.error("Create dir %s failed: %s", path.parent, e)
        fh = logging.handlers.RotatingFileHandler(str(path), maxBytes=10 * 1024 * 1024, backupCount=5)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        root.addHandler(fh)
        _installed_handlers.append(fh)

# =========================
# Shell & container tool
# =========================

class CommandResult:
    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def __repr__(self):
        return f"CommandResult(rc={self.returncode})"

class Shell:
    """
    Runs external commands and filesystem mutations.

    Commands flagged `mutating` (and every move/remove) are only announced in
    dry-run mode; the announcement is the live log line prefixed with
    "[DRY RUN] ". Read-only queries always execute.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run

    def _announce(self, msg: str, *args):
        logging.info(("[DRY RUN] " if self.dry_run else "") + msg, *args)

    def run(self, cmd: Sequence[str], *, mutating: bool = False, input: Optional[str] = None,
            stream: bool = False) -> CommandResult:
        cmd = [str(c) for c in cmd]
        if mutating:
            self._announce("Executing: %s", shlex.join(cmd))
            if self.dry_run:
                return CommandResult(0)
        else:
            logging.debug("SH: %s", shlex.join(cmd))
        return self._execute(cmd, input=input, stream=stream)

    def move(self, src: Path, dst_dir: Path):
        self._announce("Moving %s -> %s/", src, dst_dir)
        if not self.dry_run:
            self._move(src, dst_dir)

    def remove(self, path: Path):
        self._announce("Removing %s", path)
        if not self.dry_run:
            self._remove(path)

    def _execute(self, cmd: List[str], *, input: Optional[str] = None, stream: bool = False) -> CommandResult:
        try:
            if stream:
                return self._execute_streaming(cmd)
            cp = subprocess.run(cmd, shell=False, check=False, input=input,
                                stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            logging.debug("SH rc=%s, stdout=%r, stderr=%r", cp.returncode, cp.stdout, cp.stderr)
            return CommandResult(cp.returncode, cp.stdout, cp.stderr)
        except FileNotFoundError as e:
            logging.error("Command not found: %s", e)
            return CommandResult(127, "", str(e))

    def _execute_streaming(self, cmd: List[str]) -> CommandResult:
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                   text=True, bufsize=1)
        if process.stdout:
            for line in process.stdout:
                line = line.rstrip("\n\r")
                if line:
                    logging.info(line)
        rc = process.wait()
        logging.debug("SH_WITH_LOGGING rc=%s", rc)
        return CommandResult(rc)

    def _move(self, src: Path, dst_dir: Path):
        shutil.move(str(src), str(Path(dst_dir) / src.name))

    def _remove(self, path: Path):
        path.unlink()

def parse_pct_status(output: str) -> ContainerState:
    # pct prints "status: running"
    for line in output.splitlines():
        key, _, value = line.partition(":")
        if key.strip() == "status":
            try:
                return ContainerState(value.strip())
            except ValueError:
                logging.debug("Unrecognised container status %r", value.strip())
                return ContainerState.UNKNOWN
    return ContainerState.UNKNOWN

class Pct:
    def __init__(self, shell: Shell, binary: str = "pct"):
        self.shell = shell
        self.binary = binary

    def exists(self, ctid: str) -> bool:
        return self.shell.run([self.binary, "config", ctid]).ok

    def status(self, ctid: str) -> ContainerState:
        res = self.shell.run([self.binary, "status", ctid])
        if not res.ok:
            return ContainerState.UNKNOWN
        return parse_pct_status(res.stdout)

    def start(self, ctid: str) -> CommandResult:
        return self.shell.run([self.binary, "start", ctid], mutating=True)

    def stop(self, ctid: str) -> CommandResult:
        return self.shell.run([self.binary, "stop", ctid], mutating=True)

    def unlock(self, ctid: str) -> CommandResult:
        return self.shell.run([self.binary, "unlock", ctid], mutating=True)

    def exec(self, ctid: str, args: Sequence[str], timeout: int = EXEC_PROBE_TIMEOUT_SECONDS) -> CommandResult:
        return self.shell.run(["timeout", str(timeout), self.binary, "exec", ctid, "--", *args])

# =========================
# Mount guard
# =========================

def is_mounted(path, ismount: Callable[[str], bool] = os.path.ismount) -> bool:
    """True if `path` or any ancestor below the filesystem root is a mount point."""
    p = Path(os.path.abspath(str(path)))
    logging.info("Checking if %s is a mount point...", p)
    for candidate in (p, *p.parents):
        if candidate == candidate.parent:
            break
        logging.debug("Checking %s...", candidate)
        if ismount(str(candidate)):
            logging.info("%s is a mount point.", candidate)
            return True
    logging.info("No mount point found for %s.", p)
    return False

# =========================
# Locality detection
# =========================

def detect_locality(pct: Pct, ctid: str, node_name: str) -> Locality:
    if not pct.exists(ctid):
        logging.info("Container %s does not exist on this node", ctid)
        return Locality.ABSENT

    state = pct.status(ctid)
    if state is ContainerState.STOPPED:
        logging.info("Container %s is stopped locally", ctid)
        return Locality.LOCAL
    if state is ContainerState.RUNNING:
        if pct.exec(ctid, ["echo", "test"]).ok:
            logging.info("Container %s is running locally on %s", ctid, node_name)
            return Locality.LOCAL
        logging.info("Container %s appears running but not accessible (likely on other node)", ctid)
        return Locality.REMOTE
    logging.info("Container %s status: %s (skipping - not local)", ctid, state.value)
    return Locality.REMOTE

# =========================
# Cluster-wide per-container lock
# =========================

class LockCoordinator:
    """
    One lock file per container under `lock_dir`, content "<node>:<pid>:<timestamp>".
    Locks older than LOCK_STALE_SECONDS (by mtime) are treated as abandoned.
    Best effort only: two nodes racing inside the same instant may both see no lock.
    """

    def __init__(self, lock_dir: Path, node_name: str, pid: Optional[int] = None,
                 now: Callable[[], float] = time.time):
        self.lock_dir = Path(lock_dir)
        self.node_name = node_name
        self.pid = os.getpid() if pid is None else pid
        self.now = now

    def lock_path(self, ctid: str) -> Path:
        return self.lock_dir / f"backup-{ctid}.lock"

    def acquire(self, ctid: str) -> bool:
        path = self.lock_path(ctid)
        try:
            age = self.now() - path.stat().st_mtime
        except FileNotFoundError:
            age = None

        if age is not None:
            if age > LOCK_STALE_SECONDS:
                logging.info("Removing stale lock file for container %s (age %.1f hours)", ctid, age / 3600)
                path.unlink(missing_ok=True)
            else:
                logging.info("Backup already in progress for container %s (lock held by %s)",
                             ctid, self._owner(path))
                return False

        stamp = dt.datetime.fromtimestamp(self.now()).isoformat(timespec="seconds")
        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            with open(path, "x") as fh:
                fh.write(f"{self.node_name}:{self.pid}:{stamp}\n")
        except FileExistsError:
            logging.info("Lock for container %s was taken concurrently by %s", ctid, self._owner(path))
            return False
        logging.debug("Acquired lock %s", path)
        return True

    def release(self, ctid: str):
        try:
            self.lock_path(ctid).unlink(missing_ok=True)
        except OSError as e:
            logging.warning("Failed to remove lock file for container %s: %s", ctid, e)

    @contextlib.contextmanager
    def held(self, ctid: str) -> Iterator[bool]:
        """Yields whether the lock was acquired; an acquired lock is released on every exit path."""
        acquired = self.acquire(ctid)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(ctid)

    @staticmethod
    def _owner(path: Path) -> str:
        try:
            return path.read_text().strip() or "unknown"
        except OSError:
            return "unknown"

# =========================
# ZFS snapshot preflight
# =========================

def candidate_datasets(ctid: str) -> List[str]:
    return [pattern.format(ctid=ctid, disk=disk)
            for pattern in ZFS_DATASET_PATTERNS
            for disk in range(ZFS_MAX_DISKS)]

def cleanup_stale_snapshots(shell: Shell, ctid: str, zfs_binary: str = "zfs") -> int:
    """
    Destroy "<dataset>@vzdump" snapshots left behind by an interrupted run.
    Advisory: every error is logged and swallowed. Returns the number destroyed.
    """
    destroyed = 0
    for ds in candidate_datasets(ctid):
        snap = f"{ds}@{STALE_SNAPSHOT_NAME}"
        try:
            if not shell.run([zfs_binary, "list", "-H", "-o", "name", ds]).ok:
                continue
            if not shell.run([zfs_binary, "list", "-H", "-t", "snapshot", "-o", "name", snap]).ok:
                continue
            logging.warning("Found stale snapshot %s from a previous run", snap)
            res = shell.run([zfs_binary, "destroy", snap], mutating=True)
            if res.ok:
                destroyed += 1
            else:
                logging.warning("Failed to destroy stale snapshot %s: %s", snap, res.stderr.strip())
        except Exception as e:
            logging.warning("Stale snapshot check for %s failed: %s", snap, e)
    return destroyed

# =========================
# Backup execution
# =========================

def build_vzdump_command(cfg: Config, ctid: str) -> List[str]:
    return ["timeout", str(BACKUP_TIMEOUT_SECONDS), "vzdump", ctid,
            "--dumpdir", str(cfg.local_backup_dir),
            "--mode", "snapshot",
            "--compress", cfg.compression,
            "--mailto", cfg.email_recipient]

def run_backup(shell: Shell, pct: Pct, cfg: Config, ctid: str) -> Outcome:
    logging.info("Starting backup for container %s...", ctid)
    try:
        res = shell.run(build_vzdump_command(cfg, ctid), mutating=True, stream=True)
    finally:
        # vzdump may leave the container locked even when it fails
        logging.info("Unlocking container %s...", ctid)
        try:
            pct.unlock(ctid)
        except Exception as e:
            logging.warning("Unlocking container %s failed: %s", ctid, e)

    if res.returncode == 124:
        return Outcome.failure(f"Backup timed out after 3 hours for container {ctid}", KIND_BACKUP_TIMEOUT)
    if not res.ok:
        return Outcome.failure(f"vzdump exited with code {res.returncode} for container {ctid}",
                               KIND_BACKUP_FAILED)
    return Outcome.success()

# =========================
# Health verification
# =========================

class Remedy(enum.IntEnum):
    NONE = 0
    START = 1
    RESTART = 2

def escalate(previous: Remedy, needed: Remedy) -> Remedy:
    """The ladder only climbs: never apply less than an earlier attempt did."""
    return max(previous, needed)

class HealthCheck:
    def __init__(self, remedy: Remedy, detail: str = "", fatal: bool = False):
        self.remedy = remedy
        self.detail = detail
        self.fatal = fatal

    @property
    def healthy(self) -> bool:
        return self.remedy is Remedy.NONE and not self.fatal

def parse_loadavg(output: str) -> Optional[float]:
    try:
        return float(output.split()[0])
    except (IndexError, ValueError):
        return None

def parse_df_usage(output: str) -> Optional[int]:
    lines = [l for l in output.splitlines() if l.strip()]
    if len(lines) < 2:
        return None
    for token in lines[-1].split():
        if token.endswith("%") and token[:-1].isdigit():
            return int(token[:-1])
    return None

class HealthVerifier:
    def __init__(self, pct: Pct, *, deep: bool = True, attempts: int = HEALTH_MAX_ATTEMPTS,
                 settle: float = SETTLE_SECONDS, sleep: Callable[[float], None] = time.sleep):
        self.pct = pct
        self.deep = deep
        self.attempts = attempts
        self.settle = settle
        self.sleep = sleep

    def check(self, ctid: str) -> HealthCheck:
        state = self.pct.status(ctid)
        if state is not ContainerState.RUNNING:
            return HealthCheck(Remedy.START, f"status is {state.value}")

        probe = self.pct.exec(ctid, ["echo", "test"])
        if not probe.ok:
            return HealthCheck(Remedy.RESTART, f"exec probe failed (rc={probe.returncode})")

        ps = self.pct.exec(ctid, ["ps", "-e", "-o", "pid="])
        count = len([l for l in ps.stdout.splitlines() if l.strip()]) if ps.ok else 0
        if count < MIN_PROCESS_COUNT:
            return HealthCheck(Remedy.RESTART, f"only {count} processes running (minimum {MIN_PROCESS_COUNT})")

        if self.deep:
            load = self.pct.exec(ctid, ["cat", "/proc/loadavg"])
            loadavg = parse_loadavg(load.stdout) if load.ok else None
            if loadavg is None:
                return HealthCheck(Remedy.RESTART, "system load not reportable")
            logging.debug("Container %s load average %.2f", ctid, loadavg)

            df = self.pct.exec(ctid, ["df", "-P", "/"])
            usage = parse_df_usage(df.stdout) if df.ok else None
            if usage is None:
                logging.warning("Could not read disk usage of container %s", ctid)
            elif usage > DISK_CRITICAL_PERCENT:
                return HealthCheck(Remedy.NONE, f"root filesystem {usage}% full (critical above {DISK_CRITICAL_PERCENT}%)",
                                   fatal=True)

        return HealthCheck(Remedy.NONE)

    def apply(self, ctid: str, remedy: Remedy):
        if remedy is Remedy.START:
            logging.info("Starting container %s...", ctid)
            self.pct.start(ctid)
            self.sleep(self.settle)
        elif remedy is Remedy.RESTART:
            logging.info("Restarting container %s to fix possible issues...", ctid)
            self.pct.stop(ctid)
            self.sleep(self.settle)
            self.pct.start(ctid)
            self.sleep(self.settle)

    def verify(self, ctid: str) -> Outcome:
        ladder = Remedy.NONE
        detail = ""
        for attempt in range(1, self.attempts + 1):
            logging.info("Health check for container %s (attempt %d/%d)", ctid, attempt, self.attempts)
            result = self.check(ctid)
            if result.healthy:
                logging.info("Container %s is healthy", ctid)
                return Outcome.success()
            detail = result.detail
            if result.fatal:
                logging.error("Container %s health check failed: %s", ctid, detail)
                return Outcome.failure(detail, KIND_RESTORE_FAILED)
            logging.warning("Container %s unhealthy: %s", ctid, detail)
            if attempt < self.attempts:
                ladder = escalate(ladder, result.remedy)
                self.apply(ctid, ladder)
        return Outcome.failure(f"{detail} (after {self.attempts} attempts)", KIND_RESTORE_FAILED)

# =========================
# State restore
# =========================

class StateRestorer:
    def __init__(self, pct: Pct, verifier: HealthVerifier, *, settle: float = SETTLE_SECONDS,
                 sleep: Callable[[float], None] = time.sleep):
        self.pct = pct
        self.verifier = verifier
        self.settle = settle
        self.sleep = sleep

    def restore(self, ctid: str, initial_state: ContainerState) -> Outcome:
        if initial_state is ContainerState.STOPPED:
            # stopped containers are never auto-started; stopping twice is harmless
            logging.info("Container %s was stopped before backup, ensuring it stays stopped", ctid)
            self.pct.stop(ctid)
            return Outcome.success()

        if initial_state is not ContainerState.RUNNING:
            return Outcome.failure(f"Cannot restore container {ctid} from state {initial_state.value}",
                                   KIND_RESTORE_FAILED)

        logging.info("Ensuring container %s is running...", ctid)
        if self.pct.status(ctid) is not ContainerState.RUNNING:
            self.pct.start(ctid)
            self.sleep(self.settle)
        return self.verifier.verify(ctid)

# =========================
# Artifacts, upload & retention
# =========================

def artifact_prefix(ctid: str) -> str:
    return f"vzdump-lxc-{ctid}-"

def is_artifact_name(name: str, ctid: str) -> bool:
    return name.startswith(artifact_prefix(ctid)) and name.endswith(ARTIFACT_EXTENSIONS)

def artifact_timestamp(name: str) -> Optional[dt.datetime]:
    m = _ARTIFACT_RE.match(name)
    if not m:
        return None
    return dt.datetime.strptime(m.group("stamp"), _ARTIFACT_STAMP_FORMAT)

def group_artifacts(paths: Sequence[Path]) -> Dict[Optional[dt.datetime], List[Path]]:
    groups: Dict[Optional[dt.datetime], List[Path]] = {}
    for p in sorted(paths):
        groups.setdefault(artifact_timestamp(p.name), []).append(p)
    return groups

def start_of_day(ts: float) -> float:
    day = dt.datetime.fromtimestamp(ts).replace(hour=0, minute=0, second=0, microsecond=0)
    return day.timestamp()

def list_files(directory: Path, pattern: str) -> List[Path]:
    try:
        return sorted(p for p in Path(directory).glob(pattern) if p.is_file())
    except OSError as e:
        logging.warning("Listing %s failed: %s", directory, e)
        return []

class Uploader:
    def __init__(self, cfg: Config, shell: Shell, *, sleep: Callable[[float], None] = time.sleep,
                 now: Callable[[], float] = time.time):
        self.cfg = cfg
        self.shell = shell
        self.sleep = sleep
        self.now = now

    def find_todays_artifacts(self, ctid: str) -> List[Path]:
        midnight = start_of_day(self.now())
        out = []
        for p in list_files(self.cfg.local_backup_dir, artifact_prefix(ctid) + "*"):
            try:
                if p.stat().st_mtime >= midnight:
                    out.append(p)
            except OSError as e:
                logging.warning("Cannot stat %s: %s", p, e)
        return out

    def _transfer(self, files: Sequence[Path]) -> bool:
        if not self.cfg.uses_separate_target:
            return True
        target = Path(self.cfg.target_backup_dir)
        try:
            for f in files:
                if not f.exists() and (target / f.name).is_file():
                    continue  # moved by an earlier attempt
                self.shell.move(f, target)
        except OSError as e:
            logging.warning("Failed to move backup files to %s: %s", target, e)
            return False
        return True

    def _verify(self, files: Sequence[Path]) -> bool:
        target = Path(self.cfg.target_backup_dir)
        missing = [] if self.cfg.dry_run else [f.name for f in files if not (target / f.name).is_file()]
        if missing:
            logging.warning("Failed to verify %s in %s", ", ".join(missing), target)
            return False
        logging.info("Verified %d file(s) in %s", len(files), target)
        return True

    def upload_with_retry(self, ctid: str, files: Optional[Sequence[Path]] = None) -> Outcome:
        files = list(self.find_todays_artifacts(ctid) if files is None else files)
        if not files:
            logging.error("No backup files found for container %s", ctid)
            return Outcome.failure(f"No backup files found for container {ctid} in {self.cfg.local_backup_dir}",
                                   KIND_UPLOAD_FAILED)

        for attempt in range(1, UPLOAD_MAX_ATTEMPTS + 1):
            logging.info("Attempting to move backup files to target storage (attempt %d/%d)...",
                         attempt, UPLOAD_MAX_ATTEMPTS)
            if self._transfer(files) and self._verify(files):
                logging.info("Successfully moved and verified backup files for container %s", ctid)
                return Outcome.success()
            if attempt < UPLOAD_MAX_ATTEMPTS:
                delay = attempt * UPLOAD_BACKOFF_SECONDS
                logging.info("Retrying in %d seconds...", delay)
                self.sleep(delay)

        logging.error("Failed to upload backup for container %s after %d attempts", ctid, UPLOAD_MAX_ATTEMPTS)
        return Outcome.failure(
            f"Upload to {self.cfg.target_backup_dir} failed after {UPLOAD_MAX_ATTEMPTS} attempts; "
            f"backup files remain in {self.cfg.local_backup_dir}",
            KIND_UPLOAD_FAILED)

class RetentionPruner:
    def __init__(self, cfg: Config, shell: Shell, *, now: Callable[[], float] = time.time):
        self.cfg = cfg
        self.shell = shell
        self.now = now

    def expired(self, ctid: str) -> List[Path]:
        cutoff = self.now() - self.cfg.retention.total_seconds()
        out = []
        for p in list_files(self.cfg.target_backup_dir, artifact_prefix(ctid) + "*"):
            if not is_artifact_name(p.name, ctid):
                continue
            try:
                if p.stat().st_mtime < cutoff:
                    out.append(p)
            except OSError as e:
                logging.warning("Cannot stat %s: %s", p, e)
        return out

    def prune(self, ctid: str) -> List[Path]:
        """Remove artifacts older than the retention window. Never raises."""
        logging.info("Cleaning old backups for container %s (older than %d days)...", ctid, self.cfg.days_to_keep)
        removed = []
        try:
            candidates = self.expired(ctid)
        except Exception as e:
            logging.warning("Retention scan for container %s failed: %s", ctid, e)
            return removed
        for p in candidates:
            try:
                self.shell.remove(p)
                removed.append(p)
            except OSError as e:
                logging.warning("Failed to remove %s: %s", p, e)
        logging.info("Removed %d expired file(s) for container %s", len(removed), ctid)
        return removed

# =========================
# Notifications
# =========================

class Event(enum.Enum):
    RUN_STARTED = "started"
    CONTAINER_FAILED = "container-failed"
    RUN_COMPLETED = "completed"

class Notifier:
    """Fire-and-forget e-mail through mail(1). notify() never raises and returns nothing."""

    def __init__(self, shell: Shell, recipient: str, node_name: str, mail_binary: str = "mail"):
        self.shell = shell
        self.recipient = recipient
        self.node_name = node_name
        self.mail_binary = mail_binary

    def render(self, event: Event, details: Mapping[str, object]) -> Tuple[str, str]:
        node = self.node_name
        when = details.get("time") or dt.datetime.now().strftime("%c")
        if event is Event.RUN_STARTED:
            return (f"Proxmox Backup Started - Node {node}",
                    f"Backup process started at {when} on node {node}")
        if event is Event.CONTAINER_FAILED:
            kind = details.get("kind") or KIND_UNEXPECTED
            ctid = details.get("ctid", "?")
            return (f"Proxmox Backup FAILED - CT {ctid} ({kind}) - Node {node}",
                    f"{details.get('message', '')}\n\nContainer {ctid} on node {node} at {when}.")
        if details.get("success"):
            return (f"Proxmox Backup SUCCESS - Node {node}",
                    f"Container backup process completed successfully at {when} on node {node}. "
                    f"Backups saved to target storage.\n\n{details.get('summary', '')}".rstrip())
        return (f"Proxmox Backup FAILED - Node {node}",
                f"Backup process completed with ERRORS at {when} on node {node}. "
                f"Check logs for details.\n\n{details.get('summary', '')}".rstrip())

    def notify(self, event: Event, details: Optional[Mapping[str, object]] = None) -> None:
        try:
            subject, body = self.render(event, details or {})
            logging.info("Sending notification: %s", subject)
            res = self.shell.run([self.mail_binary, "-s", subject, self.recipient], mutating=True, input=body)
            if not res.ok:
                logging.warning("Notification '%s' failed (rc=%s): %s", subject, res.returncode, res.stderr.strip())
        except Exception as e:
            logging.warning("Notification %s could not be sent: %s", event.value, e)

# =========================
# Orchestration
# =========================

class BackupJob:
    """Per-container record for one run; never persisted."""

    def __init__(self, ctid: str, initial_state: ContainerState):
        self.ctid = ctid
        self.initial_state = initial_state
        self.artifacts: Dict[Optional[dt.datetime], List[Path]] = {}
        self.backup: Optional[Outcome] = None
        self.restore: Optional[Outcome] = None
        self.upload: Optional[Outcome] = None
        self.pruned: List[Path] = []
        self.error: Optional[str] = None

    @property
    def verdict(self) -> Verdict:
        if self.error or self.backup is None or not self.backup.ok:
            return Verdict.FAILED
        if self.restore is not None and self.restore.ok and self.upload is not None and self.upload.ok:
            return Verdict.SUCCESS
        return Verdict.PARTIAL

    def describe(self) -> str:
        def step(o: Optional[Outcome]) -> str:
            if o is None:
                return "skipped"
            return "ok" if o.ok else "FAILED"
        return (f"CT {self.ctid}: {self.verdict.value} "
                f"(backup={step(self.backup)}, restore={step(self.restore)}, upload={step(self.upload)})")

class RunSummary:
    def __init__(self):
        self.jobs: List[BackupJob] = []
        self.skipped: List[Tuple[str, str]] = []  # (ctid, reason)

    @property
    def success(self) -> bool:
        return all(j.verdict is Verdict.SUCCESS for j in self.jobs)

    def lines(self) -> List[str]:
        out = [j.describe() for j in self.jobs]
        out.extend(f"CT {ctid}: skipped ({reason})" for ctid, reason in self.skipped)
        return out

class BackupRunner:
    def __init__(self, cfg: Config, shell: Optional[Shell] = None, *,
                 sleep: Callable[[float], None] = time.sleep, now: Callable[[], float] = time.time):
        self.cfg = cfg
        self.shell = shell or Shell(dry_run=cfg.dry_run)
        self.now = now
        self.pct = Pct(self.shell)
        self.locks = LockCoordinator(cfg.lock_dir, cfg.node_name, now=now)
        self.verifier = HealthVerifier(self.pct, deep=cfg.deep_health_check, sleep=sleep)
        self.restorer = StateRestorer(self.pct, self.verifier, sleep=sleep)
        self.uploader = Uploader(cfg, self.shell, sleep=sleep, now=now)
        self.pruner = RetentionPruner(cfg, self.shell, now=now)
        self.notifier = Notifier(self.shell, cfg.email_recipient, cfg.node_name)

    def _timestamp(self) -> str:
        return dt.datetime.fromtimestamp(self.now()).strftime("%Y-%m-%d %H:%M:%S")

    def backup_exists_today(self, ctid: str) -> bool:
        today = dt.datetime.fromtimestamp(self.now()).strftime("%Y_%m_%d")
        found = list_files(self.cfg.target_backup_dir, f"{artifact_prefix(ctid)}{today}-*")
        if found:
            logging.info("Backup for container %s already exists for today: %s", ctid, found[0].name)
            return True
        logging.info("No existing backup found for container %s today", ctid)
        return False

    def _notify_failure(self, ctid: str, outcome: Outcome):
        self.notifier.notify(Event.CONTAINER_FAILED, {
            "ctid": ctid, "kind": outcome.kind or KIND_UNEXPECTED,
            "message": outcome.reason, "time": self._timestamp(),
        })

    def _guarded(self, step: str, ctid: str, fn: Callable[[], Outcome], kind: str) -> Outcome:
        try:
            return fn()
        except Exception as e:
            logging.exception("%s step for container %s raised", step.capitalize(), ctid)
            return Outcome.failure(f"{step} raised {type(e).__name__}: {e}", kind)

    def process_container(self, ctid: str, summary: Optional[RunSummary] = None) -> Optional[BackupJob]:
        """
        Run the lifecycle for one container. Returns None when the container is
        skipped (not local, already backed up today, or locked elsewhere).
        """
        summary = summary if summary is not None else RunSummary()

        locality = detect_locality(self.pct, ctid, self.cfg.node_name)
        if locality is not Locality.LOCAL:
            logging.info("Container %s is not on this node, skipping...", ctid)
            summary.skipped.append((ctid, f"not local ({locality.value})"))
            return None

        if self.cfg.skip_existing_today and self.backup_exists_today(ctid):
            logging.info("Backup already exists for container %s today, skipping...", ctid)
            summary.skipped.append((ctid, "already backed up today"))
            return None

        with self.locks.held(ctid) as acquired:
            if not acquired:
                logging.info("Cannot create backup lock for container %s, skipping...", ctid)
                summary.skipped.append((ctid, "locked by another run"))
                return None
            return self._run_job(ctid)

    def _upload(self, job: BackupJob) -> Outcome:
        files = self.uploader.find_todays_artifacts(job.ctid)
        job.artifacts = group_artifacts(files)
        return self.uploader.upload_with_retry(job.ctid, files)

    def _run_job(self, ctid: str) -> BackupJob:
        job = BackupJob(ctid, self.pct.status(ctid))
        logging.info("Starting backup process for container %s (initial state: %s)...",
                     ctid, job.initial_state.value)

        cleanup_stale_snapshots(self.shell, ctid)

        job.backup = self._guarded("backup", ctid, lambda: run_backup(self.shell, self.pct, self.cfg, ctid),
                                   KIND_BACKUP_FAILED)
        if not job.backup.ok:
            logging.error("Backup failed for container %s: %s", ctid, job.backup.reason)
            self._notify_failure(ctid, job.backup)
            return job
        logging.info("Backup completed for container %s", ctid)

        job.restore = self._guarded("restore", ctid, lambda: self.restorer.restore(ctid, job.initial_state),
                                    KIND_RESTORE_FAILED)
        if job.restore.ok:
            logging.info("Container %s restored to %s state", ctid, job.initial_state.value)
        else:
            logging.error("Restoring container %s failed: %s", ctid, job.restore.reason)
            self._notify_failure(ctid, job.restore)

        job.upload = self._guarded("upload", ctid, lambda: self._upload(job), KIND_UPLOAD_FAILED)
        if not job.upload.ok:
            logging.error("Failed to upload backup files for container %s: %s", ctid, job.upload.reason)
            self._notify_failure(ctid, job.upload)

        job.pruned = self.pruner.prune(ctid)

        logging.info("Container %s finished: %s", ctid, job.verdict.value)
        return job

    def run(self) -> RunSummary:
        summary = RunSummary()
        logging.info("Backup process started at %s on node %s", self._timestamp(), self.cfg.node_name)
        self.notifier.notify(Event.RUN_STARTED, {"time": self._timestamp()})

        for ctid in self.cfg.containers:
            logging.info("Processing container %s...", ctid)
            try:
                job = self.process_container(ctid, summary)
            except Exception as e:
                logging.exception("Unexpected error while processing container %s", ctid)
                job = BackupJob(ctid, ContainerState.UNKNOWN)
                job.error = f"{type(e).__name__}: {e}"
                self._notify_failure(ctid, Outcome.failure(job.error, KIND_UNEXPECTED))
            if job is not None:
                summary.jobs.append(job)

        for line in summary.lines():
            logging.info("  %s", line)
        if summary.success:
            logging.info("All local backups completed successfully on %s.", self.cfg.node_name)
        else:
            logging.error("Some backups failed on %s.", self.cfg.node_name)
        self.notifier.notify(Event.RUN_COMPLETED, {
            "success": summary.success, "summary": "\n".join(summary.lines()), "time": self._timestamp(),
        })
        return summary

# =========================
# Preconditions
# =========================

def check_preconditions(cfg: Config, *, which: Callable[[str], Optional[str]] = shutil.which,
                        ismount: Callable[[str], bool] = os.path.ismount):
    """Raise PreconditionError if the run must not touch any container."""
    if cfg.check_mountpoint and cfg.uses_separate_target:
        if not is_mounted(cfg.target_backup_dir, ismount=ismount):
            raise PreconditionError(f"Target backup directory {cfg.target_backup_dir} is not mounted.")
    if not cfg.containers:
        raise PreconditionError("No containers defined.")
    if which("vzdump") is None:
        raise PreconditionError("vzdump is not installed.")

# =========================
# Main
# =========================

class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\nUse --help for usage information\n")

def build_arg_parser() -> argparse.ArgumentParser:
    ap = _ArgumentParser(prog="pve-ct-backup",
                         description="Back up Proxmox LXC containers that run on this cluster node")
    ap.add_argument("--dry-run", action="store_true",
                    help="Test mode - shows what would be done without executing")
    ap.add_argument("-c", "--config", default=None, help="Optional YAML config (overrides .env values)")
    ap.add_argument("--env-file", default=None, help="Path to .env file (default: .env beside the script)")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap

def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)

    try:
        cfg = load_config(env_file=args.env_file or default_env_file(), config_file=args.config,
                          dry_run=args.dry_run)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    setup_logging(cfg.log_level, cfg.log_file)
    if cfg.dry_run:
        logging.info("[DRY RUN] Analysis mode: no backups, moves, deletions or e-mails will happen")

    try:
        check_preconditions(cfg)
    except PreconditionError as e:
        logging.error("%s Exiting...", e)
        return 1

    summary = BackupRunner(cfg).run()

    if cfg.dry_run:
        logging.info("[DRY RUN] Analysis completed. No actual backups were performed.")
        return 0
    return 0 if summary.success else 2

if __name__ == "__main__":
    sys.exit(main())

"""
Host plumbing shared by the provisioning entry points: shell commands,
atomic file writes, HTTP fetches, archive download and the step runner.

Every function that changes the host takes a ``dry_run`` flag and only
prints what it would do when it is set.
"""

from __future__ import annotations
import datetime
import http.client
import os
import shutil
import signal
import subprocess
import sys
import tarfile
import tempfile
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from ec2_bootstrap.log import debug, dry_run_print, error, info, success, warning

Step = Tuple[str, Callable[[Dict], None], bool]


class StepError(RuntimeError):
    """A fatal provisioning step failed; the run stops here."""

    def __init__(self, number: int, title: str, cause: BaseException):
        super().__init__(f"Step {number} ({title}) failed: {cause}")
        self.number = number
        self.title = title


# ---------------------------
# Commands
# ---------------------------

def run_cmd(cmd: str, capture_output: bool = False, check: bool = True, dry_run: bool = True) -> subprocess.CompletedProcess:
    """Run a shell command. In dry-run mode we only print what would be executed."""
    debug("run_cmd called", cmd=cmd[:100], capture=capture_output, check=check, dry_run=dry_run)

    if dry_run:
        dry_run_print("Would run command", cmd)
        return subprocess.CompletedProcess(args=cmd, returncode=0, stdout="", stderr="")

    info(f"Executing command: {cmd[:120]}{'...' if len(cmd) > 120 else ''}")
    start_time = time.time()

    try:
        result = subprocess.run(cmd, shell=True, check=check, capture_output=capture_output, text=True)
    except subprocess.CalledProcessError as e:
        duration = time.time() - start_time
        error("Command failed", cmd=cmd[:100], returncode=e.returncode, duration_sec=f"{duration:.2f}")
        if e.stdout:
            error(f"Failed command stdout: {e.stdout[:500]}")
        if e.stderr:
            error(f"Failed command stderr: {e.stderr[:500]}")
        raise

    duration = time.time() - start_time
    debug("Command completed", returncode=result.returncode, duration_sec=f"{duration:.2f}")
    if result.stderr:
        warning(f"Command stderr: {result.stderr[:500]}")
    return result


def ensure_root(dry_run: bool):
    debug("Checking root privileges", dry_run=dry_run, euid=os.geteuid())
    if dry_run:
        warning("Dry-run mode: not enforcing root privileges")
        return
    if os.geteuid() != 0:
        error("This script must be run as root (use sudo). Exiting.")
        sys.exit(1)
    info("Root privileges confirmed")


def confirm(cfg: Dict):
    """Ask before changing the host unless --yes was given."""
    if cfg["dry_run"] or cfg.get("assume_yes"):
        return
    resp = input("Continue with provisioning? (y/N) ")
    if resp.strip().lower() != "y":
        warning("Provisioning cancelled by user.")
        sys.exit(0)


# ---------------------------
# Files
# ---------------------------

def timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%d%H%M%S")


def atomic_write(path: Path, data: str, mode: int = 0o644, dry_run: bool = True):
    """Write data to path atomically (via tmp file and os.replace)."""
    p = Path(path)
    debug("atomic_write called", path=str(p), size_bytes=len(data), mode=oct(mode), dry_run=dry_run)

    if dry_run:
        dry_run_print(f"Would write file {p} ({len(data)} bytes)")
        return

    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.parent / (".tmp." + p.name + "." + timestamp())
    with open(tmp, "w") as f:
        f.write(data)
    os.chmod(tmp, mode)
    os.replace(tmp, p)
    info(f"Wrote {p} ({len(data)} bytes)")


def remove_path(path: Path, dry_run: bool = True):
    path = Path(path)
    debug("remove_path called", path=str(path), exists=path.exists(), dry_run=dry_run)
    if not path.exists():
        return
    if dry_run:
        dry_run_print("Would remove", str(path))
        return
    if path.is_dir():
        shutil.rmtree(path)
        info(f"Removed directory {path}")
    else:
        path.unlink()
        info(f"Removed file {path}")


def tail(path: Path, lines: int = 20) -> str:
    with open(path, "r", errors="replace") as f:
        return "".join(f.readlines()[-lines:])


# ---------------------------
# HTTP
# ---------------------------

def http_get(url: str, headers: Optional[Mapping[str, str]] = None, method: str = "GET", timeout: float = 15,
             raise_for_status: bool = True) -> str:
    """
    Fetch url and return the decoded body. Any failure is raised as RuntimeError.

    With raise_for_status=False an HTTP error status is only logged and its
    body returned, the way ``curl -s`` behaves; transport failures still raise.
    """
    debug("http_get called", url=url, method=method, timeout=timeout)
    req = urllib.request.Request(url, headers=dict(headers or {}), method=method)
    start_time = time.time()
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        if raise_for_status:
            raise RuntimeError(f"{method} {url} failed: {e}") from e
        warning(f"{method} {url} returned HTTP {e.code}", reason=e.reason)
        return e.read().decode("utf-8", errors="replace")
    except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
        raise RuntimeError(f"{method} {url} failed: {e}") from e
    debug("http_get complete", url=url, bytes=len(body), duration_sec=f"{time.time() - start_time:.2f}")
    return body


def download_and_extract(url: str, dest: Path, dry_run: bool, timeout: float = 60) -> int:
    """
    Download a .tar.gz archive and copy its contents into dest.

    An archive with a single top-level directory (wordpress/) is unwrapped so
    dest receives that directory's contents. The archive and extraction
    scaffolding live in a temporary directory that is always removed.
    Returns the number of top-level entries copied.
    """
    dest = Path(dest)
    debug("download_and_extract called", url=url, dest=str(dest), dry_run=dry_run)

    if dry_run:
        dry_run_print(f"Would download {url} and extract it into {dest}")
        return 0

    with tempfile.TemporaryDirectory(prefix="ec2bootstrap_") as tmp:
        tmpdir = Path(tmp)
        archive_path = tmpdir / "archive.tar.gz"

        info(f"Downloading {url} ...")
        start_time = time.time()
        try:
            with urllib.request.urlopen(url, timeout=timeout) as resp, open(archive_path, "wb") as out:
                shutil.copyfileobj(resp, out)
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            error("Failed to download archive", url=url, error=str(e))
            raise RuntimeError(f"Failed to download {url}: {e}") from e
        info("Download complete",
             size_mb=f"{archive_path.stat().st_size / 1024 / 1024:.2f}",
             duration_sec=f"{time.time() - start_time:.2f}")

        extracted = tmpdir / "extracted"
        extracted.mkdir()
        try:
            with tarfile.open(archive_path, "r:gz") as tf:
                tf.extractall(path=str(extracted), filter="data")
        except tarfile.TarError as e:
            error("Failed to extract archive", error=str(e))
            raise RuntimeError(f"Failed to extract {archive_path.name}: {e}") from e

        entries = list(extracted.iterdir())
        root = entries[0] if len(entries) == 1 and entries[0].is_dir() else extracted
        debug("Archive root", path=str(root))

        dest.mkdir(parents=True, exist_ok=True)
        count = 0
        for item in root.iterdir():
            target = dest / item.name
            if item.is_dir():
                if target.exists():
                    shutil.rmtree(target)
                shutil.copytree(item, target)
            else:
                shutil.copy2(item, target)
            count += 1

    info("Archive contents copied", dest=str(dest), entries=count)
    return count


# ---------------------------
# Step runner
# ---------------------------

def run_steps(steps: Iterable[Step], cfg: Dict):
    """
    Run (title, function, fatal) steps in order.

    A fatal step that raises stops the run with StepError; a non-fatal one
    is logged and the next step runs.
    """
    for number, (title, func, fatal) in enumerate(steps, start=1):
        info(f"Step {number}: {title}")
        start_time = time.time()
        try:
            func(cfg)
        except Exception as exc:
            if fatal:
                error(f"Step {number} failed", title=title, error=str(exc))
                raise StepError(number, title, exc) from exc
            warning(f"Step {number} failed; continuing", title=title, error=str(exc))
            continue
        debug(f"Step {number} complete", duration_sec=f"{time.time() - start_time:.2f}")


def _signal_handler(sig, frame):
    warning(f"Received signal {sig}. Aborting...")
    sys.exit(1)


def install_signal_handlers():
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def run_main(cfg: Dict, steps: Iterable[Step], summary: Callable[[Dict], None]):
    """Shared tail of each entry point: confirm, check root, run steps, summarize."""
    confirm(cfg)
    ensure_root(cfg["dry_run"])
    install_signal_handlers()
    info(f"Starting provisioning in {'DRY-RUN' if cfg['dry_run'] else 'EXECUTE'} mode")

    overall_start = time.time()
    try:
        run_steps(steps, cfg)
    except Exception as exc:
        error("Provisioning failed", error=str(exc), duration_sec=f"{time.time() - overall_start:.2f}")
        debug("Exception details", exception_type=type(exc).__name__)
        sys.exit(1)

    info("All provisioning steps completed", total_duration_sec=f"{time.time() - overall_start:.2f}")
    summary(cfg)
    if not cfg["dry_run"]:
        success("Provisioning finished")

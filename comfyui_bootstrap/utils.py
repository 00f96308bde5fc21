import logging
import re
import subprocess
import threading
from pathlib import Path

import git
from rich.console import Console
from rich.logging import RichHandler

from .constants import LOG_LEVEL

console = Console(width=160, log_path=False)
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, show_path=False)],
)
logger = logging.getLogger("boot")

# child processes started by exec_command, terminated on shutdown signals
_active_processes: set[subprocess.Popen] = set()
_active_processes_lock = threading.Lock()


def compile_pattern(pattern_str: str) -> re.Pattern:
    if not pattern_str:
        return None
    try:
        return re.compile(pattern_str)
    except re.error as e:
        logger.error(f"❌ Invalid regex pattern: {pattern_str}\n{str(e)}")
        return None


def is_valid_git_path(path: str | Path) -> bool:
    try:
        _ = git.Repo(path).git_dir
        return True
    except Exception:
        return False


def tail_output(output: str | None, lines: int = 8) -> str:
    if not output:
        return ""
    return "\n".join(output.strip().splitlines()[-lines:])


# use subprocess.Popen to get real-time output
# reference: https://github.com/python/cpython/blob/main/Lib/subprocess.py#L514
def exec_command(
    command: list[str],
    check=False,
    timeout: float | None = None,
    log_path: Path | None = None,
    **kwargs,
) -> subprocess.CompletedProcess:
    stdout_output = ""
    log_file = None
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_file = open(log_path, "a", encoding="utf-8")
        log_file.write(f"$ {' '.join(str(part) for part in command)}\n")
    try:
        with subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            **kwargs,
        ) as proc:
            with _active_processes_lock:
                _active_processes.add(proc)
            timer = None
            timed_out = threading.Event()

            def kill_on_timeout():
                timed_out.set()
                proc.kill()

            if timeout:
                timer = threading.Timer(timeout, kill_on_timeout)
                timer.daemon = True
                timer.start()
            try:
                for line in proc.stdout:
                    if log_file:
                        log_file.write(line)
                        logger.debug(line.rstrip())
                    else:
                        logger.info(line.strip())
                    stdout_output += line
                retcode = proc.wait()
            except Exception:
                proc.kill()
                raise
            finally:
                if timer:
                    timer.cancel()
                with _active_processes_lock:
                    _active_processes.discard(proc)
            if timed_out.is_set():
                raise subprocess.TimeoutExpired(command, timeout, output=stdout_output)
            if check and retcode:
                raise subprocess.CalledProcessError(
                    retcode, command, output=stdout_output
                )
    finally:
        if log_file:
            log_file.close()
    return subprocess.CompletedProcess(proc.args, retcode, stdout_output, None)


def terminate_active_processes() -> int:
    with _active_processes_lock:
        processes = list(_active_processes)
    for proc in processes:
        if proc.poll() is None:
            proc.terminate()
    return len(processes)


def filter_path_list(
    list: list[Path], include_pattern: str = None, exclude_pattern: str = None
) -> list[Path]:
    include = compile_pattern(include_pattern)
    if include:
        list = [path for path in list if include.search(str(path))]
    exclude = compile_pattern(exclude_pattern)
    if exclude:
        list = [path for path in list if not exclude.search(str(path))]
    return list


def print_list_tree(list: list, level: int = logging.INFO) -> None:
    for item in list:
        logger.log(level, f"└─ {str(item)}")

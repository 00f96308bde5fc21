import os
from pathlib import Path


def get_bool_env(var_name: str, default: bool = False) -> bool:
    value = os.environ.get(var_name)
    if value is None:
        return default
    value = value.lower()
    if value in ("true", "1", "t", "yes", "y"):
        return True
    elif value in ("false", "0", "f", "no", "n"):
        return False
    else:
        return default


def get_int_env(var_name: str, default: int) -> int:
    value = os.environ.get(var_name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_float_env(var_name: str, default: float) -> float:
    value = os.environ.get(var_name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def get_path_env(var_name: str, default: Path) -> Path:
    value = os.environ.get(var_name)
    return Path(value) if value else default


WORKDIR = get_path_env("WORKDIR", Path("/workspace"))
COMFYUI_PATH = get_path_env("COMFYUI_PATH", WORKDIR / "ComfyUI")
COMFYUI_REPO = os.environ.get(
    "COMFYUI_REPO", "https://github.com/comfyanonymous/ComfyUI.git"
)
COMFYUI_LISTEN = os.environ.get("COMFYUI_LISTEN", "0.0.0.0")
COMFYUI_PORT = get_int_env("COMFYUI_PORT", 8188)
COMFYUI_EXTRA_ARGS = os.environ.get("COMFYUI_EXTRA_ARGS", None)

BOOT_CONFIG_INCLUDE = os.environ.get("BOOT_CONFIG_INCLUDE", None)
BOOT_CONFIG_EXCLUDE = os.environ.get("BOOT_CONFIG_EXCLUDE", None)
BOOT_CONFIG_DIR = get_path_env("BOOT_CONFIG_DIR", WORKDIR / "boot_config")
BOOT_LOG_DIR = get_path_env("BOOT_LOG_DIR", WORKDIR / ".cache" / "boot-logs")

BOOT_UPDATE_REPOS = get_bool_env("UPDATE_REPOS", False)

# concurrency & retry tuning
MAX_JOBS = get_int_env("MAX_JOBS", 4)
MAX_RETRIES = get_int_env("MAX_RETRIES", 3)
RETRY_BASE_SLEEP = get_float_env("RETRY_BASE_SLEEP", 2)
FETCH_CLIENT_READY_TIMEOUT = get_float_env("FETCH_CLIENT_READY_TIMEOUT", 30)
# 0 disables the per-command timeout
TASK_TIMEOUT = get_float_env("TASK_TIMEOUT", 0) or None

PIP_EXCLUDE = [
    name.strip()
    for name in os.environ.get("PIP_EXCLUDE", "torch,torchvision,torchaudio").split(",")
    if name.strip()
]

FETCH_CLIENT = os.environ.get("FETCH_CLIENT", "hf-cli").lower()
HUB_CLIENT_SPEC = os.environ.get("HUB_CLIENT_SPEC", "huggingface_hub==0.36.0")
HF_API_TOKEN = os.environ.get("HF_TOKEN") or os.environ.get("HF_API_TOKEN") or None

CN_NETWORK = get_bool_env("CN_NETWORK", False)
if CN_NETWORK:
    # Use mirror site for Hugging Face when CN_NETWORK is true
    HF_ENDPOINT_DEFAULT = "https://hf-mirror.com"
else:
    HF_ENDPOINT_DEFAULT = "https://huggingface.co"
HF_ENDPOINT = os.environ.get("HF_ENDPOINT", HF_ENDPOINT_DEFAULT)

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

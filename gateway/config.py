"""Settings for the loop engine gateway and terminal session.

Uses pydantic-settings to load from the project's .env file (LOOPGEN_*
variables), with type validation and defaults that work for a local
MusicGen-small setup on the default sound device.
"""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # HTTP / WebSocket gateway
    host: str = "0.0.0.0"
    port: int = 8080

    # Model
    model_id: str = "facebook/musicgen-small"
    model_revision: Optional[str] = None
    model_device: Literal["auto", "cpu", "cuda", "mps"] = "auto"
    model_patterns: List[str] = ["*.json", "*.safetensors", "*.model"]
    guidance_scale: float = 3.0
    max_new_tokens: int = 512

    # Playback
    audio_backend: Literal["sounddevice", "null"] = "sounddevice"
    audio_device: Optional[str] = None
    audio_blocksize: int = 0
    audio_channels: int = 1
    crossfade_duration: float = 2.0
    teardown_margin: float = 0.1

    # Prompt used when generate-audio arrives without one
    default_prompt: str = ""

    log_dir: Path = PROJECT_ROOT / "logs"

    model_config = {
        "env_file": str(PROJECT_ROOT / ".env"),
        "env_prefix": "LOOPGEN_",
        "extra": "ignore",
        "protected_namespaces": ("settings_",),
    }


settings = Settings()

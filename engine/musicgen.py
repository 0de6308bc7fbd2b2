"""MusicGen backend — text prompt to mono float32 samples via transformers.

Blocking by design: ModelLoader and GenerationPipeline call these methods
from the default thread pool executor. torch and transformers are imported
lazily so the rest of the engine can run (and be tested) without them.

Pipeline: Hub file list -> hf_hub_download per file (progress per file)
          -> MusicgenForConditionalGeneration -> generate() with a step streamer
"""

import fnmatch
import logging
import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import numpy as np

from .errors import LoadError, SynthesisError
from .types import ModelHandle

log = logging.getLogger("musicgen")

DEFAULT_MODEL_ID = "facebook/musicgen-small"

# Weights + tokenizer + processor configs; skips the duplicate .bin weights
DEFAULT_PATTERNS = ("*.json", "*.safetensors", "*.model")

# (loaded_bytes, total_bytes, file_label)
DownloadCallback = Callable[[int, int, str], None]
# (completed_steps)
StepCallback = Callable[[int], None]


def _select_files(siblings, patterns: Sequence[str]) -> List[tuple]:
    """Pick (filename, size) pairs from a Hub file listing."""
    files = []
    for s in siblings:
        name = s.rfilename
        if "/" in name:
            continue  # only the repo root is needed
        if any(fnmatch.fnmatch(name, p) for p in patterns):
            files.append((name, s.size or 0))
    return files


def _resolve_device(preference: str) -> str:
    """auto -> cuda > mps > cpu."""
    import torch

    if preference and preference != "auto":
        return preference
    if torch.cuda.is_available():
        return "cuda"
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return "mps"
    return "cpu"


def _make_streamer(on_step: Optional[StepCallback]):
    """Build a transformers streamer that counts generated steps."""
    from transformers.generation.streamers import BaseStreamer

    class StepCounter(BaseStreamer):
        def __init__(self):
            self.calls = 0

        def put(self, value):
            # The first put() carries the decoder start ids, not a new step
            self.calls += 1
            if self.calls > 1 and on_step:
                on_step(self.calls - 1)

        def end(self):
            pass

    return StepCounter()


class MusicGenBackend:
    """Loads and runs a MusicGen checkpoint from the Hugging Face Hub."""

    def __init__(
        self,
        model_id: str = DEFAULT_MODEL_ID,
        device: str = "auto",
        patterns: Sequence[str] = DEFAULT_PATTERNS,
        revision: Optional[str] = None,
        guidance_scale: float = 3.0,
    ):
        self.model_id = model_id
        self.device = device
        self.patterns = tuple(patterns)
        self.revision = revision
        self.guidance_scale = guidance_scale

    def _download(self, on_progress: Optional[DownloadCallback]) -> Path:
        """Fetch the model files one by one, reporting cumulative bytes."""
        from huggingface_hub import HfApi, hf_hub_download

        info = HfApi().model_info(self.model_id, revision=self.revision, files_metadata=True)
        files = _select_files(info.siblings or [], self.patterns)
        if not files:
            raise LoadError(f"No model files matching {self.patterns} in {self.model_id}")

        total = sum(size for _, size in files)
        loaded = 0
        local_dir = None
        log.info("Fetching %d files (%.1f MB) for %s", len(files), total / 1e6, self.model_id)
        for name, size in files:
            path = hf_hub_download(self.model_id, name, revision=self.revision)
            local_dir = Path(path).parent
            loaded += size
            if on_progress:
                on_progress(loaded, total, name)
        return local_dir

    def load(self, on_progress: Optional[DownloadCallback] = None) -> ModelHandle:
        """Download (if not cached) and initialize the model."""
        try:
            import torch
            from transformers import AutoProcessor, MusicgenForConditionalGeneration
        except ImportError as e:
            raise LoadError(f"MusicGen runtime not installed ({e}); install the 'model' extra") from e

        local_dir = self._download(on_progress)
        device = _resolve_device(self.device)

        log.info("Loading MusicGen from %s on %s (torch %s)", local_dir, device, torch.__version__)
        processor = AutoProcessor.from_pretrained(os.fspath(local_dir))
        model = MusicgenForConditionalGeneration.from_pretrained(os.fspath(local_dir))
        model.to(device)
        model.eval()

        sample_rate = int(model.config.audio_encoder.sampling_rate)
        log.info("MusicGen loaded: %s (native rate: %d Hz)", self.model_id, sample_rate)
        return ModelHandle(
            model=model,
            processor=processor,
            sample_rate=sample_rate,
            name=self.model_id,
            device=device,
        )

    def synthesize(
        self,
        handle: ModelHandle,
        prompt: str,
        max_steps: int,
        on_step: Optional[StepCallback] = None,
    ) -> np.ndarray:
        """Generate up to max_steps audio tokens for prompt. Returns float32 samples."""
        import torch

        try:
            inputs = handle.processor(text=[prompt], padding=True, return_tensors="pt")
            inputs = inputs.to(handle.device)
            with torch.no_grad():
                audio = handle.model.generate(
                    **inputs,
                    max_new_tokens=max_steps,
                    do_sample=True,
                    guidance_scale=self.guidance_scale,
                    streamer=_make_streamer(on_step),
                )
        except Exception as e:
            raise SynthesisError(f"MusicGen generation failed: {e}") from e

        # (batch, channels, samples) -> first item, first channel
        samples = audio[0, 0].float().cpu().numpy()
        log.debug(
            "MusicGen [%s]: %r -> %d samples @ %dHz (%.2fs)",
            handle.name, prompt[:50], len(samples), handle.sample_rate,
            len(samples) / handle.sample_rate,
        )
        return samples

"""Local speech-to-text via whisper.cpp, with ffmpeg for format conversion.

Nothing in here raises for a missing binary, model or converter: callers get
a ``TranscribeResult`` with a human-readable ``reason`` instead, and can show
``WHISPER_INSTALL_INSTRUCTIONS`` to the user.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path

import httpx
from loguru import logger

WHISPER_BINARY_NAMES: tuple[str, ...] = ("whisper-cpp", "whisper", "main")

MODEL_SEARCH_DIRS: tuple[Path, ...] = (
    Path.home() / ".local" / "share" / "whisper-cpp" / "models",
    Path.home() / "whisper.cpp" / "models",
    Path("/usr/local/share/whisper-cpp/models"),
    Path("/usr/share/whisper-cpp/models"),
)

# Smallest first: voice notes are short and latency matters more than accuracy.
MODEL_FILE_NAMES: tuple[str, ...] = (
    "ggml-base.en.bin",
    "ggml-base.bin",
    "ggml-small.en.bin",
    "ggml-small.bin",
    "ggml-medium.en.bin",
    "ggml-medium.bin",
    "ggml-large.bin",
)

BINARY_ENV = "WHISPER_CPP_PATH"
MODEL_ENV = "WHISPER_CPP_MODEL"
WHISPER_TIMEOUT_SECONDS = 120
AUDIO_TEMP_DIR = "chatpipe-audio"

WHISPER_INSTALL_INSTRUCTIONS = """The user sent a voice/audio message, but whisper-cpp is not available for transcription.

To enable voice transcription, install whisper-cpp:

macOS (Homebrew):
    brew install whisper-cpp
    whisper-cpp-download-ggml-model base.en

Build from source:
    git clone https://github.com/ggerganov/whisper.cpp.git
    cd whisper.cpp
    cmake -B build
    cmake --build build --config Release
    ./models/download-ggml-model.sh base.en

After installing, make sure the whisper-cpp binary is in your PATH and a model file
(e.g. ggml-base.en.bin) is in one of:
- ~/.local/share/whisper-cpp/models/
- ~/whisper.cpp/models/
- /usr/local/share/whisper-cpp/models/

Or set WHISPER_CPP_PATH and WHISPER_CPP_MODEL environment variables."""


@dataclass(frozen=True)
class TranscribeResult:
    success: bool
    text: str = ""
    reason: str = ""

    @classmethod
    def ok(cls, text: str) -> TranscribeResult:
        return cls(success=True, text=text)

    @classmethod
    def unavailable(cls, reason: str) -> TranscribeResult:
        return cls(success=False, reason=reason)


@dataclass(frozen=True)
class WhisperLocator:
    """Where to look for the whisper.cpp binary and model files."""
    binary_names: tuple[str, ...] = WHISPER_BINARY_NAMES
    model_dirs: tuple[Path, ...] = MODEL_SEARCH_DIRS
    model_names: tuple[str, ...] = MODEL_FILE_NAMES

    def find_binary(self) -> str | None:
        env_path = os.environ.get(BINARY_ENV)
        if env_path and Path(env_path).exists():
            return env_path
        for name in self.binary_names:
            found = shutil.which(name)
            if found:
                return found
        return None

    def find_model(self) -> str | None:
        env_model = os.environ.get(MODEL_ENV)
        if env_model and Path(env_model).exists():
            return env_model
        for directory in self.model_dirs:
            for name in self.model_names:
                candidate = directory / name
                if candidate.exists():
                    return str(candidate)
        return None


DEFAULT_LOCATOR = WhisperLocator()


def find_whisper_binary(locator: WhisperLocator = DEFAULT_LOCATOR) -> str | None:
    return locator.find_binary()


def find_whisper_model(locator: WhisperLocator = DEFAULT_LOCATOR) -> str | None:
    return locator.find_model()


def is_ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None


async def _run(args: list[str], timeout: float | None = None) -> str:
    """Run a process without a shell; return stdout or raise RuntimeError."""
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"{Path(args[0]).name} timed out after {timeout}s")

    if process.returncode != 0:
        err = stderr.decode("utf-8", errors="replace").strip()
        raise RuntimeError(f"{Path(args[0]).name} exited with code {process.returncode}: {err[:500]}")
    return stdout.decode("utf-8", errors="replace")


def _new_wav_path() -> Path:
    fd, name = tempfile.mkstemp(prefix="chatpipe-", suffix=".wav")
    os.close(fd)
    return Path(name)


async def convert_to_wav(input_path: str | Path, output_path: Path) -> Path:
    """Resample to 16 kHz mono 16-bit PCM, the format whisper.cpp expects."""
    await _run([
        "ffmpeg",
        "-i", str(input_path),
        "-ar", "16000",
        "-ac", "1",
        "-c:a", "pcm_s16le",
        "-y",
        str(output_path),
    ])
    return output_path


async def transcribe_audio(
    audio_path: str | Path,
    locator: WhisperLocator = DEFAULT_LOCATOR,
    timeout: float = WHISPER_TIMEOUT_SECONDS,
) -> TranscribeResult:
    """Transcribe an audio file with whisper.cpp.

    The source file belongs to the caller and is left alone. The intermediate
    WAV is always removed before returning.
    """
    binary = find_whisper_binary(locator)
    if not binary:
        return TranscribeResult.unavailable("whisper-cpp binary not found")

    model = find_whisper_model(locator)
    if not model:
        return TranscribeResult.unavailable("whisper-cpp model not found")

    if not is_ffmpeg_available():
        return TranscribeResult.unavailable("ffmpeg is required for audio conversion but was not found")

    wav_path: Path | None = None
    try:
        wav_path = _new_wav_path()
        await convert_to_wav(audio_path, wav_path)
        stdout = await _run([binary, "-m", model, "-f", str(wav_path), "--no-timestamps"], timeout=timeout)
        text = stdout.strip()
        if not text:
            return TranscribeResult.unavailable("whisper-cpp produced empty transcription")
        logger.info(f"Transcribed {Path(audio_path).name} -> {len(text)} chars")
        return TranscribeResult.ok(text)
    except Exception as e:
        logger.warning(f"whisper-cpp transcription failed for {audio_path}: {e}")
        return TranscribeResult.unavailable(f"whisper-cpp transcription failed: {e}")
    finally:
        if wav_path is not None:
            wav_path.unlink(missing_ok=True)


async def download_to_temp(
    url: str,
    extension: str,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Path:
    """Download ``url`` into a dedicated temp dir under a random name.

    Non-2xx responses raise ``httpx.HTTPStatusError``. The caller owns the
    returned file and must delete it.
    """
    temp_dir = Path(tempfile.gettempdir()) / AUDIO_TEMP_DIR
    temp_dir.mkdir(parents=True, exist_ok=True)
    file_path = temp_dir / f"{uuid.uuid4()}{extension}"

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=transport) as client:
        response = await client.get(url)
        response.raise_for_status()
    file_path.write_bytes(response.content)
    logger.debug(f"Downloaded {len(response.content)} bytes to {file_path}")
    return file_path

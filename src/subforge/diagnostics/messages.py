"""User-facing failure messages.

Technical failure kinds are logged; users only ever see these texts.
"""

from typing import Optional

from subforge.diagnostics.recovery import FailureKind, suggest_smaller_model
from subforge.hardware.device import BackendKind

FALLBACK_SUBTITLE_TEXT = (
    "Audio processing failed - please try again with a different model or CPU processing"
)

BACKEND_HINTS = {
    BackendKind.CUDA: "NVIDIA GPU processing failed. Please check your CUDA installation or switch to CPU processing.",
    BackendKind.OPENVINO: "Intel GPU processing failed. Please check your OpenVINO installation or switch to CPU processing.",
    BackendKind.COREML: "Apple Neural Engine processing failed. Please switch to CPU processing.",
}

KIND_MESSAGES = {
    FailureKind.DRIVER_MISSING:
        "No working GPU driver was found. Please install or reinstall your GPU drivers, "
        "or switch to CPU processing.",
    FailureKind.DRIVER_CORRUPTED:
        "The GPU runtime installation appears to be damaged. Please reinstall the "
        "application or your GPU drivers.",
    FailureKind.DRIVER_INCOMPATIBLE_VERSION:
        "Your GPU driver version is not supported. Please install a supported driver "
        "or switch to CPU processing.",
    FailureKind.MODEL_CORRUPTED:
        "The speech model file is damaged. Please delete and download the model again.",
    FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE:
        "The speech model could not be downloaded. Please check your internet "
        "connection and try again.",
    FailureKind.MODEL_UNAVAILABLE:
        "The requested speech model is not available for download. Please check the "
        "model name.",
    FailureKind.RUNTIME_FAULT:
        "Processing stopped unexpectedly. Please try again or switch to CPU processing.",
    FailureKind.UNKNOWN:
        "Processing failed. Please try again or contact support.",
}


def user_message(
    kind: FailureKind,
    backend: Optional[BackendKind] = None,
    model_id: Optional[str] = None,
) -> str:
    """Translate a failure kind into an actionable message."""
    if kind == FailureKind.GPU_MEMORY_EXHAUSTED:
        smaller = suggest_smaller_model(model_id or "")
        if smaller:
            return (
                "Not enough GPU memory for this model. Try the smaller "
                f"'{smaller}' model or switch to CPU processing."
            )
        return "Not enough memory for this model. Please close other applications and try again."

    if kind == FailureKind.MODEL_UNAVAILABLE and model_id:
        return (
            f"The speech model '{model_id}' is not available for download. "
            "Please check the model name."
        )

    if kind in (FailureKind.RUNTIME_FAULT, FailureKind.UNKNOWN) and backend in BACKEND_HINTS:
        return BACKEND_HINTS[backend]

    return KIND_MESSAGES[kind]


def fallback_subtitle(duration_seconds: float = 0.0) -> str:
    """Single-cue SRT written when every backend failed."""
    end = max(duration_seconds, 5.0)
    hours, rem = divmod(int(end), 3600)
    minutes, seconds = divmod(rem, 60)
    millis = int((end - int(end)) * 1000)
    return (
        "1\n"
        f"00:00:00,000 --> {hours:02d}:{minutes:02d}:{seconds:02d},{millis:03d}\n"
        f"{FALLBACK_SUBTITLE_TEXT}\n"
    )

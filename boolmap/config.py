"""Configuration for Boolean Map saliency.

Defaults here are what the command line and batch runner fall back to. The
pipeline itself never assumes them: every parameter is passed in explicitly.

Usage:
    from boolmap.config import BMSConfig, NormMode

    config = BMSConfig(step=8.0, dilation_width=7, opening_width=5,
                       normalize=NormMode.L2, handle_border=False)
"""

from dataclasses import dataclass
from enum import Enum, IntEnum

from boolmap.errors import InvalidConfiguration


# =============================================================================
# Enumerations
# =============================================================================


class Channel(str, Enum):
    """Lab feature channels, in the order they are processed."""

    L = "L"
    A = "a"
    B = "b"


class Polarity(str, Enum):
    """Which side of a threshold a boolean map flags."""

    ABOVE = "above"
    AT_MOST = "at_most"


class NormMode(str, Enum):
    """Attention map normalization.

    - L2: scale so the sum of squares equals 1
    - MINMAX: rescale to [0, 1]
    """

    L2 = "l2"
    MINMAX = "minmax"


class Marker(IntEnum):
    """Pixel states of the border flood fill."""

    UNVISITED = 0
    BACKGROUND = 1
    FOREGROUND = 2


# =============================================================================
# Defaults
# =============================================================================

DEFAULT_STEP = 8.0
DEFAULT_DILATION_WIDTH = 7
DEFAULT_OPENING_WIDTH = 5
DEFAULT_NORMALIZE = NormMode.L2
DEFAULT_HANDLE_BORDER = False
DEFAULT_WORKERS = 1

# Seed jitter: with probability JITTER_PROB a border seed moves inward by an
# offset drawn from [JITTER_MIN, JITTER_MAX)
JITTER_PROB = 0.01
JITTER_MIN = 5
JITTER_MAX = 25

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".bmp", ".tif", ".tiff")


@dataclass(frozen=True)
class BMSConfig:
    """Parameters for one saliency computation.

    Attributes:
        step: Threshold sampling step, must be > 0.
        dilation_width: Dilation iterations applied to each attention mask.
        opening_width: Opening iterations applied to each boolean map.
        normalize: Attention map normalization mode.
        handle_border: Jitter border seeds inward to tolerate frame artifacts.
        seed: Seed for the jitter RNG; None draws fresh entropy.
        workers: Threads used per channel sweep.
    """

    step: float = DEFAULT_STEP
    dilation_width: int = DEFAULT_DILATION_WIDTH
    opening_width: int = DEFAULT_OPENING_WIDTH
    normalize: NormMode = DEFAULT_NORMALIZE
    handle_border: bool = DEFAULT_HANDLE_BORDER
    seed: int | None = None
    workers: int = DEFAULT_WORKERS

    def __post_init__(self):
        # Coerce plain strings/flags from CLI callers
        object.__setattr__(self, "normalize", resolve_norm_mode(self.normalize))
        validate_params(self.step, self.dilation_width, self.opening_width, self.workers)


def resolve_norm_mode(normalize):
    """Accept a NormMode, its string value, or a flag (True means L2)."""
    if isinstance(normalize, bool):
        return NormMode.L2 if normalize else NormMode.MINMAX
    try:
        return NormMode(normalize)
    except ValueError as e:
        raise InvalidConfiguration(f"Unknown normalize mode: {normalize!r}") from e


def validate_params(step=None, dilation_width=0, opening_width=0, workers=1):
    """Reject out-of-range pipeline parameters before any work is done."""
    if step is not None and not step > 0:
        raise InvalidConfiguration(f"Threshold step must be positive, got {step}")
    if dilation_width < 0:
        raise InvalidConfiguration(f"Dilation width must be >= 0, got {dilation_width}")
    if opening_width < 0:
        raise InvalidConfiguration(f"Opening width must be >= 0, got {opening_width}")
    if workers < 1:
        raise InvalidConfiguration(f"Workers must be >= 1, got {workers}")

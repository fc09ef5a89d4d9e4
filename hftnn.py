"""
HFTNN — Harmonic-Filtered Spectral Transform
=============================================
Converts a time-domain signal into a compact sequence of magnitude/phase
pairs sampled at musically spaced frequencies, and back.

Each analysis frame is windowed, transformed with an injected FFT kernel, and
reduced to the spectral bins nearest to the harmonic intervals

    f_j = fundamental * 2^(j / frequencies_in_octave),   j = 0 .. N-1

(plus ``extra_bins`` neighbours on either side of each).  Longer signals are
cut into 50%-overlapping frames, optionally keeping only every
``interpolated_chunks + 1``-th frame; the inverse path rebuilds the missing
frames by linear interpolation and stitches everything back together with
overlap-add.

The reconstruction is lossy by construction: every bin outside the selected
harmonic neighbourhoods is zero, and negative-frequency bins are never
populated.

Requirements (install via pip):
  pip install numpy scipy
"""

import logging
import math
from dataclasses import dataclass, fields, replace
from typing import Any, Mapping, Sequence

import numpy as np

from fft_kernel import FFTKernel, NumpyFFT, create_complex_array, is_power_of_two

logger = logging.getLogger(__name__)

# C0 in twelve-tone equal temperament with A4 = 440 Hz.
WESTERN_FUNDAMENTAL = 16.351597831287414

# Overlap-add gain for the sine window at a 50% hop.  Only valid for that
# window/hop pair.
OVERLAP_COMPENSATION = 2.0


class InvalidInput(ValueError):
    """A signal, frame or set of properties that cannot be transformed."""


# ──────────────────────────────────────────────
#  Properties
# ──────────────────────────────────────────────

_CAMEL_KEYS = {
    "sampleRate": "sample_rate",
    "fundamental": "fundamental",
    "frequenciesInOctave": "frequencies_in_octave",
    "octaveRange": "octave_range",
    "extraBins": "extra_bins",
    "interpolatedChunks": "interpolated_chunks",
    "dftSize": "dft_size",
}


def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


def _require_positive(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise InvalidInput(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value) or value <= 0:
        raise InvalidInput(f"{name} must be finite and greater than 0, got {value!r}")


def _require_int(name: str, value, minimum: int) -> None:
    if not _is_int(value) or value < minimum:
        raise InvalidInput(f"{name} must be an integer >= {minimum}, got {value!r}")


@dataclass(frozen=True)
class HFTNNProperties:
    """
    Parameters shared by the forward and inverse transforms.

    Everything but ``sample_rate`` defaults to a western twelve-tone scale
    starting at C0 and spanning eleven octaves.

    sample_rate : sampling rate of the source signal (Hz)
    fundamental : lowest harmonic frequency (Hz)
    frequencies_in_octave : harmonic intervals per octave (12 = semitones)
    octave_range : number of octaves covered above the fundamental
    extra_bins : neighbouring bins kept on each side of every harmonic bin
    interpolated_chunks : frames dropped between two stored frames, rebuilt
        by interpolation on the inverse path
    dft_size : frame length and transform size; a power of two > 1
    """

    sample_rate: float
    fundamental: float = WESTERN_FUNDAMENTAL
    frequencies_in_octave: int = 12
    octave_range: int = 11
    extra_bins: int = 2
    interpolated_chunks: int = 0
    dft_size: int = 2048

    def __post_init__(self):
        _require_positive("sample_rate", self.sample_rate)
        _require_positive("fundamental", self.fundamental)
        _require_int("frequencies_in_octave", self.frequencies_in_octave, 1)
        _require_int("octave_range", self.octave_range, 1)
        _require_int("extra_bins", self.extra_bins, 0)
        _require_int("interpolated_chunks", self.interpolated_chunks, 0)
        if not is_power_of_two(self.dft_size):
            raise InvalidInput(
                f"dft_size must be a power of two greater than 1, got {self.dft_size!r}"
            )

    @property
    def interval_count(self) -> int:
        return self.octave_range * self.frequencies_in_octave

    @property
    def bins_per_interval(self) -> int:
        return 2 * self.extra_bins + 1

    @property
    def frame_size(self) -> int:
        """Number of (magnitude, phase) entries in every harmonic frame."""
        return self.interval_count * self.bins_per_interval

    @property
    def hop_size(self) -> int:
        return self.dft_size // 2

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "HFTNNProperties":
        """Build properties from a dict using snake_case or camelCase keys."""
        if mapping is None:
            raise InvalidInput("No properties have been given.")
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in mapping.items():
            name = _CAMEL_KEYS.get(key, key)
            if name not in known:
                raise InvalidInput(f"unknown property {key!r}")
            if name in kwargs:
                raise InvalidInput(f"property {name!r} given more than once")
            kwargs[name] = value
        if "sample_rate" not in kwargs:
            raise InvalidInput("sample_rate is required")
        return cls(**kwargs)

    def to_dict(self) -> dict:
        return {camel: getattr(self, name) for camel, name in _CAMEL_KEYS.items()}

    def with_changes(self, **changes) -> "HFTNNProperties":
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise InvalidInput(f"unknown properties: {', '.join(unknown)}")
        return replace(self, **changes)


# ──────────────────────────────────────────────
#  Window function
# ──────────────────────────────────────────────

class CosineWindow:
    """
    Pre-computed sine-shaped window  w[i] = sin(pi * i / (N - 1)).

    The multipliers are read-only once built, so one instance can be shared
    by every frame of a temporal call.  ``apply`` scales the given buffer in
    place: whoever passes a buffer in hands it over.
    """

    def __init__(self, length: int):
        if not _is_int(length) or length <= 1:
            raise InvalidInput(f"window length must be an integer greater than 1, got {length!r}")
        self.length = int(length)
        multipliers = np.sin(np.pi * np.arange(self.length) / (self.length - 1))
        multipliers.setflags(write=False)
        self.multipliers = multipliers

    def apply(self, buffer: np.ndarray) -> None:
        """Multiply the first ``min(len(buffer), length)`` samples in place."""
        n = min(len(buffer), self.length)
        buffer[:n] *= self.multipliers[:n]


# ──────────────────────────────────────────────
#  Harmonic bin mapping
# ──────────────────────────────────────────────

def interval_to_freq(x: float, fundamental: float, intervals_in_octave: int) -> float:
    """Frequency *x* intervals above *fundamental*; ``intervals_in_octave`` steps double it."""
    return fundamental * 2.0 ** (x / intervals_in_octave)


def freq_to_fft_bin(freq: float, sample_rate: float, signal_length: int) -> int:
    """
    Nearest bin of a *signal_length*-point spectrum to *freq*.

    Exact halves round up (2.5 -> 3), so bin indices match between the
    forward and inverse paths regardless of Python's banker's rounding.
    """
    return int(math.floor(freq * signal_length / sample_rate + 0.5))


def harmonic_bins(properties: HFTNNProperties, signal_length: int | None = None) -> list[int]:
    """Centre bin of every harmonic interval, in interval order."""
    n = properties.dft_size if signal_length is None else signal_length
    return [
        freq_to_fft_bin(
            interval_to_freq(j, properties.fundamental, properties.frequencies_in_octave),
            properties.sample_rate,
            n,
        )
        for j in range(properties.interval_count)
    ]


# ──────────────────────────────────────────────
#  Polar / rectangular helpers
# ──────────────────────────────────────────────

def fft_bin_to_magnitude_phase(re: float, im: float) -> tuple[float, float]:
    magnitude = math.hypot(re, im)
    if magnitude == 0.0:
        return 0.0, 0.0
    phase = math.atan2(im, re)
    # keep phase in (-pi, pi]
    if phase == -math.pi:
        phase = math.pi
    return magnitude, phase


def magnitude_phase_to_complex(magnitude: float, phase: float) -> tuple[float, float]:
    return math.cos(phase) * magnitude, math.sin(phase) * magnitude


def lerp(v0, v1, t: float):
    return (1 - t) * v0 + t * v1


def interpolate_frames(current: np.ndarray, lookahead: np.ndarray, t: float) -> np.ndarray:
    """Entry-wise blend of two harmonic frames.

    Magnitude and phase are interpolated independently; phases are not
    unwrapped.
    """
    return lerp(current, lookahead, t)


# ──────────────────────────────────────────────
#  Input checking
# ──────────────────────────────────────────────

def _check_properties(properties) -> HFTNNProperties:
    if properties is None:
        raise InvalidInput("No properties have been given.")
    if not isinstance(properties, HFTNNProperties):
        raise InvalidInput(
            f"properties must be HFTNNProperties, got {type(properties).__name__}"
        )
    return properties


def _as_signal(signal) -> np.ndarray:
    """Private float64 copy of *signal*."""
    if signal is None:
        raise InvalidInput("No signal has been specified.")
    try:
        x = np.array(signal, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"signal is not a sequence of numbers: {exc}") from exc
    if x.ndim != 1:
        raise InvalidInput(f"signal must be one-dimensional, got shape {x.shape}")
    return x


def _as_frame(frame, properties: HFTNNProperties) -> np.ndarray:
    if frame is None:
        raise InvalidInput("No HFTNN has been specified.")
    try:
        arr = np.asarray(frame, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"frame is not a sequence of (magnitude, phase) pairs: {exc}") from exc
    expected = (properties.frame_size, 2)
    if arr.shape != expected:
        raise InvalidInput(f"frame must have shape {expected}, got {arr.shape}")
    return arr


def _as_temporal(temporal, properties: HFTNNProperties) -> np.ndarray:
    if temporal is None:
        raise InvalidInput("No temporal HFTNN has been specified.")
    try:
        arr = np.asarray(temporal, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InvalidInput(f"temporal HFTNN is not a sequence of frames: {exc}") from exc
    if arr.ndim >= 1 and arr.shape[0] == 0:
        return np.zeros((0, properties.frame_size, 2))
    expected = (properties.frame_size, 2)
    if arr.ndim != 3 or arr.shape[1:] != expected:
        raise InvalidInput(
            f"every frame must have shape {expected}, got frames of shape {arr.shape[1:]}"
        )
    return arr


# ──────────────────────────────────────────────
#  Overlap-add
# ──────────────────────────────────────────────

def overlap_add(frames: Sequence[np.ndarray]) -> np.ndarray:
    """
    Stitch equal-length windowed frames with a 50% hop.

    Each frame starts half a frame before the end of the accumulated signal.
    Overlapping samples are summed and scaled by ``OVERLAP_COMPENSATION``;
    the remaining half of the frame is appended.

    Parameters
    ----------
    frames : sequence of 1-D arrays, all of the same length

    Returns
    -------
    y : stitched signal of length ``L + (n - 1) * (L - L // 2)``
    """
    if len(frames) == 0:
        return np.zeros(0)

    length = len(frames[0])
    overlap = length // 2
    advance = length - overlap
    out = np.empty(length + (len(frames) - 1) * advance)
    out[:length] = frames[0]

    end = length
    for frame in frames[1:]:
        if len(frame) != length:
            raise InvalidInput(
                f"overlap-add needs equal-length frames, got {len(frame)} after {length}"
            )
        start = end - overlap
        out[start:end] = (out[start:end] + frame[:overlap]) * OVERLAP_COMPENSATION
        out[end:end + advance] = frame[overlap:]
        end += advance
    return out


# ──────────────────────────────────────────────
#  Transform engine
# ──────────────────────────────────────────────

class HFTNN:
    """
    Forward and inverse harmonic transforms on top of an injected FFT kernel.

    The engine keeps no state between calls apart from the kernel; windows
    and bin caches live for the duration of a single call.
    """

    def __init__(self, fft: FFTKernel | None = None):
        self.fft = fft if fft is not None else NumpyFFT()

    # ── Single frame ─────────────────────────

    def forward(self, signal, properties: HFTNNProperties,
                window: CosineWindow | None = None) -> np.ndarray:
        """
        Harmonic frame of one ``dft_size``-long signal.

        The caller's buffer is copied, never modified.  *window* is only used
        if its length matches the signal.

        Returns
        -------
        frame : float array of shape (frame_size, 2) holding
            ``[magnitude, phase]`` rows
        """
        properties = _check_properties(properties)
        x = _as_signal(signal)
        if not is_power_of_two(len(x)):
            raise InvalidInput(
                "The given signal's length must be a power of two and higher than 1, "
                f"got {len(x)}."
            )
        if len(x) != properties.dft_size:
            raise InvalidInput(
                f"signal length {len(x)} does not match dft_size {properties.dft_size}"
            )
        return self._forward_frame(x, properties, window)

    def _forward_frame(self, frame: np.ndarray, properties: HFTNNProperties,
                       window: CosineWindow | None) -> np.ndarray:
        # frame is a private buffer and gets windowed in place
        size = len(frame)
        if window is None or window.length != size:
            window = CosineWindow(size)
        window.apply(frame)

        plan = self.fft.construct(properties.dft_size)
        transform = create_complex_array(properties.dft_size)
        self.fft.real_transform(plan, transform, frame)

        n_bins = properties.dft_size // 2
        extra = properties.extra_bins
        cache: dict[int, tuple[float, float]] = {}
        hft = np.zeros((properties.frame_size, 2))
        k = 0
        dropped = 0
        for centre in harmonic_bins(properties, size):
            for idx in range(centre - extra, centre + extra + 1):
                if 0 <= idx < n_bins:
                    entry = cache.get(idx)
                    if entry is None:
                        entry = fft_bin_to_magnitude_phase(transform[2 * idx], transform[2 * idx + 1])
                        cache[idx] = entry
                    hft[k] = entry
                else:
                    dropped += 1
                k += 1

        if dropped:
            logger.debug("forward: %d of %d entries fall outside [0, %d) and are zero",
                         dropped, k, n_bins)
        return hft

    def inverse(self, frame, properties: HFTNNProperties) -> np.ndarray:
        """
        Signal of length ``dft_size`` rebuilt from one harmonic frame.

        Only the real part of the inverse transform is returned.  Bins outside
        the harmonic neighbourhoods, and all negative-frequency bins, are zero.
        """
        properties = _check_properties(properties)
        hft = _as_frame(frame, properties)
        return self._inverse_frame(hft, properties)

    def _inverse_frame(self, hft: np.ndarray, properties: HFTNNProperties) -> np.ndarray:
        size = properties.dft_size
        n_bins = size // 2
        extra = properties.extra_bins
        bins = create_complex_array(size)

        k = 0
        for centre in harmonic_bins(properties):
            for idx in range(centre - extra, centre + extra + 1):
                if 0 <= idx < n_bins:
                    re, im = magnitude_phase_to_complex(hft[k, 0], hft[k, 1])
                    bins[2 * idx] = re
                    bins[2 * idx + 1] = im
                k += 1

        plan = self.fft.construct(size)
        inverse = create_complex_array(size)
        self.fft.inverse_transform(plan, inverse, bins)
        return inverse[0::2].copy()

    # ── Temporal ─────────────────────────────

    def forward_temporal(self, signal, properties: HFTNNProperties) -> np.ndarray:
        """
        Harmonic frames of a signal of any length.

        Frames start every ``dft_size / 2`` samples; only every
        ``interpolated_chunks + 1``-th of them is kept.  Signals shorter than
        one frame are zero-padded to a single frame.

        Returns
        -------
        hftt : float array of shape (n_frames, frame_size, 2)
        """
        properties = _check_properties(properties)
        x = _as_signal(signal)
        size = properties.dft_size

        if len(x) < size:
            frame = np.zeros(size)
            frame[:len(x)] = x
            logger.debug("forward_temporal: %d samples padded to one frame of %d", len(x), size)
            return self._forward_frame(frame, properties, None)[np.newaxis]

        window = CosineWindow(size)
        hop = properties.hop_size
        hftt = []
        skip = 0
        hops = 0
        for start in range(0, len(x), hop):
            if skip == 0:
                chunk = np.zeros(size)
                seg = x[start:start + size]
                chunk[:len(seg)] = seg
                hftt.append(self._forward_frame(chunk, properties, window))
            hops += 1
            skip += 1
            if skip > properties.interpolated_chunks:
                skip = 0

        logger.debug("forward_temporal: %d samples, %d hops, %d frames kept",
                     len(x), hops, len(hftt))
        return np.stack(hftt)

    def inverse_temporal(self, temporal, properties: HFTNNProperties) -> np.ndarray:
        """
        Signal rebuilt from a sequence of harmonic frames.

        With ``interpolated_chunks > 0`` frames are taken in pairs: between a
        frame and its successor, ``2 * interpolated_chunks`` blended frames are
        synthesised, then the successor itself, which is not revisited.  All
        frames are windowed and stitched with ``overlap_add``.
        """
        properties = _check_properties(properties)
        hftt = _as_temporal(temporal, properties)
        if len(hftt) == 0:
            return np.zeros(0)

        window = None
        signals = []

        def synthesize(hft):
            nonlocal window
            signal = self._inverse_frame(hft, properties)
            if window is None:
                window = CosineWindow(len(signal))
            window.apply(signal)
            signals.append(signal)

        steps = 2 * properties.interpolated_chunks
        i = 0
        while i < len(hftt):
            current = hftt[i]
            synthesize(current)
            if steps > 0 and i + 1 < len(hftt):
                lookahead = hftt[i + 1]
                for k in range(steps):
                    t = (k + 1) / (steps + 1)
                    synthesize(interpolate_frames(current, lookahead, t))
                synthesize(lookahead)
                i += 2
            else:
                i += 1

        logger.debug("inverse_temporal: %d frames, %d windowed frames",
                     len(hftt), len(signals))
        return overlap_add(signals)


# ──────────────────────────────────────────────
#  Size report
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class HFTNNStats:
    """How much data a temporal HFTNN stores compared to its source signal."""

    signal_length: int
    frame_count: int
    frame_size: int

    @property
    def total_size(self) -> int:
        """Stored values, counting magnitude and phase separately."""
        return self.frame_count * self.frame_size * 2

    @property
    def ratio(self) -> float:
        if self.signal_length == 0:
            return 0.0
        return self.total_size / self.signal_length

    @classmethod
    def measure(cls, signal_length: int, temporal) -> "HFTNNStats":
        frame_count = len(temporal)
        frame_size = len(temporal[0]) if frame_count else 0
        return cls(int(signal_length), frame_count, frame_size)

    def to_dict(self) -> dict:
        return {
            "signal_length": self.signal_length,
            "frame_count": self.frame_count,
            "frame_size": self.frame_size,
            "total_size": self.total_size,
            "ratio": self.ratio,
        }


# ──────────────────────────────────────────────
#  Public operations
# ──────────────────────────────────────────────

def forward_transform(signal, properties: HFTNNProperties,
                      window: CosineWindow | None = None, *,
                      fft: FFTKernel | None = None) -> np.ndarray:
    """Harmonic frame of a single ``dft_size``-long signal."""
    return HFTNN(fft).forward(signal, properties, window)


def forward_temporal_transform(signal, properties: HFTNNProperties, *,
                               fft: FFTKernel | None = None) -> np.ndarray:
    """Harmonic frames of a signal of any length."""
    return HFTNN(fft).forward_temporal(signal, properties)


def inverse_transform(frame, properties: HFTNNProperties, *,
                      fft: FFTKernel | None = None) -> np.ndarray:
    """Signal rebuilt from a single harmonic frame."""
    return HFTNN(fft).inverse(frame, properties)


def inverse_temporal_transform(temporal, properties: HFTNNProperties, *,
                               fft: FFTKernel | None = None) -> np.ndarray:
    """Signal rebuilt from a sequence of harmonic frames."""
    return HFTNN(fft).inverse_temporal(temporal, properties)

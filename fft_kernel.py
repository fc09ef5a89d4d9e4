"""
FFT Kernels — pluggable real-input transform backends
======================================================
The harmonic transform never calls an FFT library directly.  It talks to a
small kernel object with three operations:

  * construct(size)                        -> plan for ``size``-point transforms
  * real_transform(plan, out, signal)      forward transform of a real signal
  * inverse_transform(plan, out, spectrum) inverse transform

Spectra and inverse outputs are *interleaved* float buffers of length
``2 * size`` laid out as ``[re0, im0, re1, im1, ...]``, written in place into
``out``.  Two kernels are provided: ``NumpyFFT`` (the default) and
``ScipyFFT``.  Anything with the same three methods can be injected instead.

Requirements (install via pip):
  pip install numpy scipy
"""

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np
import scipy.fft

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────

def is_power_of_two(n) -> bool:
    """True for integers greater than 1 that are a power of two."""
    if isinstance(n, bool) or not isinstance(n, (int, np.integer)):
        return False
    n = int(n)
    return n > 1 and (n & (n - 1)) == 0


def create_complex_array(size: int) -> np.ndarray:
    """Zero-filled interleaved buffer holding *size* complex numbers."""
    return np.zeros(2 * size, dtype=np.float64)


def interleave(z: np.ndarray, out: np.ndarray) -> None:
    out[0::2] = z.real
    out[1::2] = z.imag


def deinterleave(buf: np.ndarray) -> np.ndarray:
    return buf[0::2] + 1j * buf[1::2]


# ──────────────────────────────────────────────
#  Kernel contract
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class FFTPlan:
    """A transform plan; only the transform size is needed by the built-in kernels."""
    size: int


class FFTKernel(Protocol):
    def construct(self, size: int) -> FFTPlan: ...

    def real_transform(self, plan: FFTPlan, out: np.ndarray,
                       signal: np.ndarray) -> None: ...

    def inverse_transform(self, plan: FFTPlan, out: np.ndarray,
                          spectrum: np.ndarray) -> None: ...


# ──────────────────────────────────────────────
#  Concrete kernels
# ──────────────────────────────────────────────

class _InterleavedKernel:
    """Shared plan/buffer checking for kernels built on a complex FFT routine."""

    name = "base"

    def construct(self, size: int) -> FFTPlan:
        if not is_power_of_two(size):
            raise ValueError(f"FFT size must be a power of two greater than 1, got {size!r}")
        logger.debug("%s: constructed plan of size %d", self.name, size)
        return FFTPlan(int(size))

    def real_transform(self, plan: FFTPlan, out: np.ndarray,
                       signal: np.ndarray) -> None:
        """Forward transform of a real *signal* into interleaved *out*."""
        signal = np.asarray(signal, dtype=np.float64)
        if signal.shape != (plan.size,):
            raise ValueError(
                f"input of shape {signal.shape} does not match a plan of size {plan.size}"
            )
        self._check_out(plan, out)
        interleave(self._fft(signal), out)

    def inverse_transform(self, plan: FFTPlan, out: np.ndarray,
                          spectrum: np.ndarray) -> None:
        """Inverse transform (scaled by 1/size) of interleaved *spectrum* into *out*."""
        spectrum = np.asarray(spectrum, dtype=np.float64)
        if spectrum.shape != (2 * plan.size,):
            raise ValueError(
                f"spectrum of shape {spectrum.shape} does not match a plan of size {plan.size}"
            )
        self._check_out(plan, out)
        interleave(self._ifft(deinterleave(spectrum)), out)

    @staticmethod
    def _check_out(plan: FFTPlan, out: np.ndarray) -> None:
        if out.shape != (2 * plan.size,):
            raise ValueError(
                f"output buffer of shape {out.shape} does not match a plan of size {plan.size}"
            )

    def _fft(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _ifft(self, X: np.ndarray) -> np.ndarray:
        raise NotImplementedError


class NumpyFFT(_InterleavedKernel):
    """Kernel backed by ``numpy.fft``."""

    name = "numpy"

    def _fft(self, x: np.ndarray) -> np.ndarray:
        return np.fft.fft(x)

    def _ifft(self, X: np.ndarray) -> np.ndarray:
        return np.fft.ifft(X)


class ScipyFFT(_InterleavedKernel):
    """Kernel backed by ``scipy.fft``.

    *workers* is passed through to scipy and lets large transforms use
    several threads.
    """

    name = "scipy"

    def __init__(self, workers: int | None = None):
        self.workers = workers

    def _fft(self, x: np.ndarray) -> np.ndarray:
        return scipy.fft.fft(x, workers=self.workers)

    def _ifft(self, X: np.ndarray) -> np.ndarray:
        return scipy.fft.ifft(X, workers=self.workers)

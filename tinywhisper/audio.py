"""Log-mel spectrogram front end."""

from __future__ import annotations

import math
import warnings

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .helper import pow10, tensor_log10, tensor_max_scalar, tensor_min

N_FFT = 400
HOP_LENGTH = 160
N_MELS = 80
WINDOW_LENGTH = N_FFT

_F_MIN = 0.0
_F_SP = 200.0 / 3.0
_MIN_LOG_HZ = 1000.0
_MIN_LOG_MEL = (_MIN_LOG_HZ - _F_MIN) / _F_SP
_LOGSTEP = math.log(6.4) / 27.0


def max_waveform_samples(n_frame_max: int) -> int:
    """Largest waveform length for which ``prep_audio`` yields at most ``n_frame_max`` frames."""
    n_samples_max = HOP_LENGTH * (n_frame_max + 1) + (N_FFT % 2)
    return n_samples_max - 1


def prep_audio(waveform, sample_rate: float) -> np.ndarray:
    """Turn a ``(n_batch, n_samples)`` waveform into a ``(n_batch, n_mels, n_frame)`` log-mel spectrogram."""
    waveform = np.asarray(waveform, dtype=np.float64)
    if waveform.ndim != 2:
        raise ValueError("waveform must have shape (n_batch, n_samples)")

    window = hann_window(WINDOW_LENGTH)
    real, imag = stfft(waveform, N_FFT, HOP_LENGTH, window)

    magnitudes = (real**2 + imag**2)[:, :, :-1]
    filters = get_mel_filters(sample_rate, N_FFT, N_MELS, False)
    mel_spec = filters @ magnitudes

    log_spec = tensor_log10(tensor_max_scalar(mel_spec, 1.0e-10))
    log_spec = tensor_max_scalar(log_spec, float(log_spec.max()) - 8.0)
    return (log_spec + 4.0) / 4.0


def get_mel_filters(sample_rate: float, n_fft: int, n_mels: int, htk: bool) -> np.ndarray:
    """Mel filter bank of shape ``(n_mels, n_fft // 2 + 1)``."""
    fmin = 0.0
    fmax = sample_rate * 0.5

    fftfreqs = fft_frequencies(sample_rate, n_fft)
    mel_f = mel_frequencies(n_mels + 2, fmin, fmax, htk)

    fdiff = np.diff(mel_f)
    ramps = np.subtract.outer(mel_f, fftfreqs)

    lower = -ramps[:n_mels] / fdiff[:n_mels, np.newaxis]
    upper = ramps[2 : 2 + n_mels] / fdiff[1 : 1 + n_mels, np.newaxis]
    weights = np.maximum(0.0, tensor_min(lower, upper))

    # Slaney-style normalisation: roughly constant energy per channel.
    enorm = 2.0 / (mel_f[2 : n_mels + 2] - mel_f[:n_mels])
    weights = weights * enorm[:, np.newaxis]

    if not np.all((mel_f[:-2] == 0) | (weights.max(axis=1) > 0)):
        warnings.warn(
            "Empty filters detected in mel frequency basis. "
            "Some channels will produce empty responses. "
            "Try increasing your sampling rate (and fmax) or reducing n_mels.",
            stacklevel=2,
        )

    return weights


def fft_frequencies(sample_rate: float, n_fft: int) -> np.ndarray:
    """Centre frequency of each real-FFT bin."""
    return np.arange(n_fft // 2 + 1, dtype=np.float64) * (sample_rate / n_fft)


def mel_frequencies(n_mels: int, fmin: float, fmax: float, htk: bool) -> np.ndarray:
    """``n_mels`` frequencies evenly spaced on the mel scale between ``fmin`` and ``fmax``."""
    if n_mels < 2:
        raise ValueError("n_mels must be at least 2")
    min_mel = hz_to_mel(fmin, htk)
    max_mel = hz_to_mel(fmax, htk)
    mels = np.arange(n_mels, dtype=np.float64) * ((max_mel - min_mel) / (n_mels - 1)) + min_mel
    return mel_to_hz(mels, htk)


def hz_to_mel(freq: float, htk: bool) -> float:
    """Convert a frequency in Hz to mels (HTK or Slaney formula)."""
    if htk:
        return 2595.0 * math.log10(1.0 + freq / 700.0)
    if freq >= _MIN_LOG_HZ:
        return _MIN_LOG_MEL + math.log(freq / _MIN_LOG_HZ) / _LOGSTEP
    return (freq - _F_MIN) / _F_SP


def mel_to_hz(mel, htk: bool) -> np.ndarray:
    """Convert mels to frequencies in Hz (HTK or Slaney formula)."""
    mel = np.asarray(mel, dtype=np.float64)
    if htk:
        return (pow10(mel / 2595.0) - 1.0) * 700.0
    log_region = mel >= _MIN_LOG_MEL
    log_part = _MIN_LOG_HZ * np.exp(_LOGSTEP * (np.where(log_region, mel, _MIN_LOG_MEL) - _MIN_LOG_MEL))
    linear_part = _F_MIN + _F_SP * mel
    return np.where(log_region, log_part, linear_part)


def hann_window(window_length: int) -> np.ndarray:
    """Periodic Hann window of the given length."""
    n = np.arange(window_length, dtype=np.float64)
    return np.sin(n * (math.pi / window_length)) ** 2


def stfft(waveform, n_fft: int, hop_length: int, window) -> tuple[np.ndarray, np.ndarray]:
    """Short-time Fourier transform of a ``(n_batch, n_samples)`` waveform.

    Returns the real and imaginary parts, each of shape ``(n_batch, n_fft // 2 + 1, n_frame)``.
    The input is reflection-padded by ``n_fft // 2`` on both sides so that frames are centred.
    """
    x = np.asarray(waveform, dtype=np.float64)
    if x.ndim != 2:
        raise ValueError("waveform must have shape (n_batch, n_samples)")
    if hop_length < 1:
        raise ValueError("hop_length must be positive")
    _, n_samples = x.shape
    if n_samples < n_fft:
        raise ValueError(f"waveform has {n_samples} samples, fewer than n_fft={n_fft}")

    pad = n_fft // 2
    padded = np.pad(x, ((0, 0), (pad, pad)), mode="reflect")

    window = np.asarray(window, dtype=np.float64)
    if window.ndim != 1:
        raise ValueError("window must be one-dimensional")
    window_length = window.shape[0]
    if window_length > n_fft:
        raise ValueError(f"window length {window_length} exceeds n_fft={n_fft}")
    if window_length < n_fft:
        left = (n_fft - window_length) // 2
        window = np.pad(window, (left, n_fft - window_length - left))

    frames = sliding_window_view(padded, n_fft, axis=1)[:, ::hop_length]
    frames = frames.transpose(0, 2, 1)

    n_freq = n_fft // 2 + 1
    angles = (np.arange(n_freq, dtype=np.float64) * (2.0 * math.pi / n_fft))[:, np.newaxis] * np.arange(
        n_fft, dtype=np.float64
    )[np.newaxis, :]

    real_part = (np.cos(angles) * window) @ frames
    imaginary_part = (np.sin(angles) * -window) @ frames
    return real_part, imaginary_part
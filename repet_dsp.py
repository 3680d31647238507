"""
Building blocks for the REPET family of separation methods:
STFT / inverse STFT, beat spectrum and beat spectrogram,
repeating period estimation and repeating masks.

All spectrograms are numpy arrays laid out as (frequency, time).
"""

import numpy as np
from scipy.signal import get_window


class RepetError(ValueError):
    """Base class for errors raised by the REPET methods."""


class InvalidParameterError(RepetError):
    """A parameter is out of its valid range."""


class InsufficientSignalError(RepetError):
    """The signal is too short for the requested analysis."""


# -----------------------------------------------------------------------------
# STFT
# -----------------------------------------------------------------------------

def stft_parameters(window_duration, sample_rate):
    """
    Derive the STFT parameters from a window duration.

    The window length is the next power of two, the window is a periodic
    Hamming window and the step is half the window, which gives a constant
    overlap-add.

    Args:
        window_duration: Window duration in seconds
        sample_rate: Sample rate in Hz

    Returns:
        window_length: Window length in samples
        window_function: Analysis window
        step_length: Step length in samples
    """
    if window_duration <= 0:
        raise InvalidParameterError(f"window_duration must be positive, got {window_duration}")
    if sample_rate <= 0:
        raise InvalidParameterError(f"sample_rate must be positive, got {sample_rate}")

    window_length = 1 << int(np.ceil(np.log2(max(window_duration * sample_rate, 2.0))))
    window_function = get_window('hamming', window_length, fftbins=True)
    step_length = window_length // 2

    return window_length, window_function, step_length


def number_frames(number_samples, window_length, step_length):
    """Number of STFT frames produced by :func:`stft` for a signal length."""
    return int(np.ceil((window_length - step_length + number_samples) / step_length))


def stft(audio, window_function, step_length):
    """
    Short-Time Fourier Transform with zero-padding at the edges.

    Args:
        audio: Mono audio signal
        window_function: Analysis window
        step_length: Step length in samples

    Returns:
        Complex STFT matrix (window_length, number_frames), full spectrum
    """
    audio = np.asarray(audio, dtype=float)
    number_samples = len(audio)
    window_length = len(window_function)
    n_frames = number_frames(number_samples, window_length, step_length)

    # Pad the start so the first window is centered, and the end so the
    # frames cover the whole signal
    padded = np.concatenate([
        np.zeros(window_length - step_length),
        audio,
        np.zeros(n_frames * step_length - number_samples),
    ])

    frame_starts = step_length * np.arange(n_frames)
    frames = padded[frame_starts[np.newaxis, :] + np.arange(window_length)[:, np.newaxis]]

    return np.fft.fft(frames * window_function[:, np.newaxis], axis=0)


def istft(audio_stft, window_function, step_length):
    """
    Inverse Short-Time Fourier Transform by overlap-add.

    The normalization by the window sum is only valid for a periodic
    Hamming window with a step of half the window length.

    Args:
        audio_stft: Complex STFT matrix as returned by :func:`stft`
        window_function: Analysis window
        step_length: Step length in samples

    Returns:
        Audio signal, padded at the end up to a whole number of steps
    """
    window_length = len(window_function)
    n_frames = audio_stft.shape[1]
    number_samples = (n_frames - 1) * step_length + window_length

    frames = np.real(np.fft.ifft(audio_stft, axis=0))

    audio = np.zeros(number_samples)
    for time_index in range(n_frames):
        sample_index = step_length * time_index
        audio[sample_index:sample_index + window_length] += frames[:, time_index]

    padding = window_length - step_length
    audio = audio[padding:number_samples - padding]

    return audio / np.sum(window_function[::step_length])


# -----------------------------------------------------------------------------
# Beat spectrum
# -----------------------------------------------------------------------------

def autocorrelation(data):
    """
    Unbiased autocorrelation of each column using the Wiener-Khinchin theorem.

    Args:
        data: Matrix (number_points, number_columns)

    Returns:
        Autocorrelation for lags 0 to number_points-1, same shape as data
    """
    data = np.asarray(data, dtype=float)
    number_points = data.shape[0]

    # Zero-padding to twice the length for a linear autocorrelation
    spectrum = np.fft.rfft(data, n=2 * number_points, axis=0)
    power_spectral_density = np.abs(spectrum) ** 2
    correlation = np.fft.irfft(power_spectral_density, n=2 * number_points, axis=0)[:number_points]

    overlap = np.arange(number_points, 0, -1)
    if data.ndim > 1:
        overlap = overlap.reshape((-1,) + (1,) * (data.ndim - 1))

    return correlation / overlap


def beat_spectrum(power_spectrogram):
    """
    Beat spectrum of a power spectrogram.

    Args:
        power_spectrogram: Power spectrogram (frequency, time)

    Returns:
        Mean autocorrelation of the frequency channels, one value per lag
    """
    return np.mean(autocorrelation(np.asarray(power_spectrogram).T), axis=1)


def beat_spectrogram(power_spectrogram, segment_length, segment_step, progress=None):
    """
    Beat spectrogram for time-varying periodicity.

    The beat spectrum is computed over a segment centered on every
    segment_step-th time frame (and on the last frame). Frames in between
    take the column of the closest analyzed frame before them.

    Args:
        power_spectrogram: Power spectrogram (frequency, time)
        segment_length: Segment length in time frames
        segment_step: Step between analyzed time frames
        progress: Optional callable(completed, total) called per analyzed frame

    Returns:
        Beat spectrogram (segment_length, time)
    """
    power_spectrogram = np.asarray(power_spectrogram, dtype=float)
    number_frequencies, n_times = power_spectrogram.shape

    padded = np.concatenate([
        np.zeros((number_frequencies, int(np.ceil((segment_length - 1) / 2)))),
        power_spectrogram,
        np.zeros((number_frequencies, (segment_length - 1) // 2)),
    ], axis=1)

    analyzed = list(range(0, n_times - 1, segment_step)) + [n_times - 1]

    def analyze(count, time_index):
        column = beat_spectrum(padded[:, time_index:time_index + segment_length])
        if progress is not None:
            progress(count + 1, len(analyzed))
        return column

    columns = np.stack([analyze(count, t) for count, t in enumerate(analyzed)], axis=1)

    # Forward-fill the frames between two analyzed frames
    nearest = np.searchsorted(analyzed, np.arange(n_times), side='right') - 1

    return columns[:, nearest]


# -----------------------------------------------------------------------------
# Repeating period
# -----------------------------------------------------------------------------

def period_bounds(period_range, spectrum_length):
    """
    Lags searched for the repeating period.

    The upper bound is at most a third of the spectrum length so that the
    median has at least three repetitions to work with.

    Returns:
        (lowest, highest) lag, inclusive
    """
    lowest = int(period_range[0])
    highest = min(int(period_range[1]), spectrum_length // 3)
    if lowest < 1:
        raise InvalidParameterError(f"Minimum period must be at least one frame, got {lowest}")
    if highest < lowest:
        raise InsufficientSignalError(
            f"{spectrum_length} frames cannot hold three periods of {lowest} frames"
        )
    return lowest, highest


def repeating_periods(beat_spectra, period_range):
    """
    Find the repeating period(s) from a beat spectrum or a beat spectrogram.

    Args:
        beat_spectra: Beat spectrum (lag,) or beat spectrogram (lag, time)
        period_range: (minimum, maximum) period in time frames

    Returns:
        Period in frames (int) for a beat spectrum, or one period per
        time frame for a beat spectrogram. Ties go to the shortest lag.
    """
    beat_spectra = np.asarray(beat_spectra)
    lowest, highest = period_bounds(period_range, beat_spectra.shape[0])

    periods = np.argmax(beat_spectra[lowest:highest + 1], axis=0) + lowest

    if beat_spectra.ndim == 1:
        return int(periods)
    return periods.astype(int)


# -----------------------------------------------------------------------------
# Repeating masks
# -----------------------------------------------------------------------------

def repeating_spectrogram(spectrogram, period):
    """
    Repeating spectrogram from a single repeating period.

    The spectrogram is cut into segments of one period, the repeating
    segment is the median over the segments (the missing end of the last
    partial segment is ignored) and it is then tiled back and capped by
    the spectrogram.

    Args:
        spectrogram: Magnitude spectrogram (frequency, time)
        period: Repeating period in time frames

    Returns:
        Repeating spectrogram, same shape as spectrogram
    """
    spectrogram = np.asarray(spectrogram, dtype=float)
    number_frequencies, n_times = spectrogram.shape
    number_segments = int(np.ceil(n_times / period))
    last_length = n_times - (number_segments - 1) * period

    padded = np.zeros((number_frequencies, number_segments * period))
    padded[:, :n_times] = spectrogram
    segments = padded.reshape(number_frequencies, number_segments, period)

    # The padding of the last segment is left out of the median
    repeating_segment = np.median(segments[:, :, :last_length], axis=1)
    if last_length < period:
        tail = np.median(segments[:, :-1, last_length:], axis=1)
        repeating_segment = np.concatenate([repeating_segment, tail], axis=1)

    model = np.tile(repeating_segment, (1, number_segments))[:, :n_times]

    return np.minimum(spectrogram, model)


def adaptive_repeating_spectrogram(spectrogram, periods, number_points, progress=None):
    """
    Repeating spectrogram from one repeating period per time frame.

    Every frame is the median of the frames found at whole periods around
    it, with number_points offsets centered on 0 (e.g. 5 => -2..2,
    4 => -1..2). Offsets falling outside the spectrogram are dropped.

    Args:
        spectrogram: Magnitude spectrogram (frequency, time)
        periods: Repeating period in time frames, one per time frame
        number_points: Number of points for the median filter
        progress: Optional callable(completed, total) called per frame

    Returns:
        Repeating spectrogram, same shape as spectrogram
    """
    spectrogram = np.asarray(spectrogram, dtype=float)
    n_times = spectrogram.shape[1]
    periods = np.asarray(periods, dtype=int)
    if periods.shape != (n_times,):
        raise InvalidParameterError(
            f"Expected {n_times} periods, got array of shape {periods.shape}"
        )

    point_indices = np.arange(1, number_points + 1) - int(np.ceil(number_points / 2))

    def filter_frame(time_index):
        time_indices = time_index + point_indices * periods[time_index]
        time_indices = time_indices[(time_indices >= 0) & (time_indices < n_times)]
        column = np.median(spectrogram[:, time_indices], axis=1)
        if progress is not None:
            progress(time_index + 1, n_times)
        return column

    model = np.stack([filter_frame(t) for t in range(n_times)], axis=1)

    return np.minimum(spectrogram, model)


def soft_mask(repeating, spectrogram):
    """Normalize a repeating spectrogram by the spectrogram (values in (0, 1])."""
    eps = np.finfo(float).eps
    return (repeating + eps) / (spectrogram + eps)


def repeating_mask(spectrogram, period):
    """
    Soft repeating mask for a single repeating period.

    Args:
        spectrogram: Magnitude spectrogram (frequency, time)
        period: Repeating period in time frames

    Returns:
        Mask in (0, 1], same shape as spectrogram
    """
    return soft_mask(repeating_spectrogram(spectrogram, period), spectrogram)


def adaptive_repeating_mask(spectrogram, periods, number_points, progress=None):
    """Soft repeating mask for one repeating period per time frame."""
    repeating = adaptive_repeating_spectrogram(spectrogram, periods, number_points, progress)
    return soft_mask(repeating, spectrogram)


# -----------------------------------------------------------------------------
# Foreground high-pass
# -----------------------------------------------------------------------------

def cutoff_bin(cutoff_frequency, window_length, sample_rate):
    """Frequency channel of the cutoff frequency of the foreground high-pass."""
    return int(np.ceil(cutoff_frequency * (window_length - 1) / sample_rate))


def full_spectrum_mask(mask, cutoff):
    """
    Prepare a half-spectrum mask to be applied to a full STFT.

    The frequency channels 1 to cutoff go entirely to the background
    (the foreground is high-passed), DC keeps its computed value, then
    the mask is mirrored without the DC and Nyquist channels.

    Args:
        mask: Repeating mask (window_length/2+1, time)
        cutoff: Cutoff frequency channel

    Returns:
        Mask (window_length, time)
    """
    mask = np.array(mask, dtype=float)
    mask[1:cutoff + 1] = 1.0
    return np.concatenate([mask, np.flipud(mask[1:-1])], axis=0)

"""
REPET (REpeating Pattern Extraction Technique) Algorithm
Separates the repeating background from the non-repeating foreground
of an audio signal (e.g. accompaniment from vocals)
"""

import numpy as np
import librosa
import soundfile as sf
from scipy.signal.windows import triang

from repet_dsp import (
    InsufficientSignalError,
    InvalidParameterError,
    RepetError,
    adaptive_repeating_mask,
    beat_spectrogram,
    beat_spectrum,
    cutoff_bin,
    full_spectrum_mask,
    istft,
    number_frames,
    period_bounds,
    repeating_mask,
    repeating_periods,
    stft,
    stft_parameters,
)

__all__ = [
    'REPET',
    'RepetError',
    'InvalidParameterError',
    'InsufficientSignalError',
    'separate_stationary',
    'separate_segmented',
    'separate_adaptive',
    'separate_similarity',
    'foreground',
    'main',
]

METHODS = ('original', 'extended', 'adaptive')


class REPET:
    """
    REPET algorithm for audio source separation.
    Separates repeating background (accompaniment) from non-repeating
    foreground (vocals).

    Three variants are available: the original REPET with one repeating
    period for the whole signal, REPET extended which runs the original
    REPET on overlapping segments, and the adaptive REPET with one
    repeating period per time frame.
    """

    def __init__(self, window_duration=0.040, period_range=(1, 10), cutoff_frequency=100,
                 segment_length=10, segment_step=5, analysis_length=10, analysis_step=5,
                 median_window_points=5, progress=None):
        """
        Initialize REPET processor.

        Args:
            window_duration: STFT window duration in seconds (audio is
                stationary around 40 milliseconds)
            period_range: (minimum, maximum) repeating period in seconds
            cutoff_frequency: Cutoff frequency in Hz of the high-pass filter
                of the foreground (vocals are rarely below 100 Hz)
            segment_length: Segment length in seconds for REPET extended
            segment_step: Segment step in seconds for REPET extended
            analysis_length: Segment length in seconds for the beat
                spectrogram of the adaptive REPET
            analysis_step: Step in seconds between analyzed frames of the
                beat spectrogram of the adaptive REPET
            median_window_points: Number of points for the median filter of
                the adaptive REPET
            progress: Optional callable(completed, total) notified after each
                segment or frame is processed
        """
        if window_duration <= 0:
            raise InvalidParameterError(f"window_duration must be positive, got {window_duration}")
        if len(period_range) != 2 or not 0 < period_range[0] <= period_range[1]:
            raise InvalidParameterError(f"period_range must satisfy 0 < min <= max, got {period_range}")
        if cutoff_frequency < 0:
            raise InvalidParameterError(f"cutoff_frequency must not be negative, got {cutoff_frequency}")
        if segment_length <= 0 or segment_step <= 0:
            raise InvalidParameterError("segment_length and segment_step must be positive")
        if segment_step > segment_length:
            raise InvalidParameterError(
                f"segment_step ({segment_step}) must not exceed segment_length ({segment_length})"
            )
        if analysis_length <= 0 or analysis_step <= 0:
            raise InvalidParameterError("analysis_length and analysis_step must be positive")
        if int(median_window_points) != median_window_points or median_window_points < 1:
            raise InvalidParameterError(
                f"median_window_points must be a positive integer, got {median_window_points}"
            )

        self.window_duration = window_duration
        self.period_range = tuple(period_range)
        self.cutoff_frequency = cutoff_frequency
        self.segment_length = segment_length
        self.segment_step = segment_step
        self.analysis_length = analysis_length
        self.analysis_step = analysis_step
        self.median_window_points = int(median_window_points)
        self.progress = progress

    def stft_parameters(self, sample_rate):
        """
        STFT parameters and derived frame-domain parameters.

        Args:
            sample_rate: Sample rate

        Returns:
            window_length, window_function, step_length,
            period range in frames, cutoff frequency channel
        """
        window_length, window_function, step_length = stft_parameters(self.window_duration, sample_rate)

        if self.cutoff_frequency >= sample_rate / 2:
            raise InvalidParameterError(
                f"cutoff_frequency ({self.cutoff_frequency} Hz) must be below Nyquist ({sample_rate / 2} Hz)"
            )

        period_range = self._to_frames(self.period_range, sample_rate, step_length)
        if period_range[0] < 1:
            raise InvalidParameterError(
                f"Minimum period {self.period_range[0]} s is shorter than one frame"
            )
        cutoff = cutoff_bin(self.cutoff_frequency, window_length, sample_rate)

        return window_length, window_function, step_length, period_range, cutoff

    @staticmethod
    def _to_frames(seconds, sample_rate, step_length):
        return tuple(int(np.floor(value * sample_rate / step_length + 0.5)) for value in seconds)

    @staticmethod
    def _as_channels(audio_signal):
        """Return the signal as (samples, channels) and whether it was mono."""
        audio_signal = np.asarray(audio_signal, dtype=float)
        if audio_signal.ndim == 1:
            return audio_signal[:, np.newaxis], True
        if audio_signal.ndim != 2:
            raise InvalidParameterError(
                f"Expected a (samples,) or (samples, channels) signal, got shape {audio_signal.shape}"
            )
        return audio_signal, False

    @staticmethod
    def _check_length(number_samples, window_length, step_length, period_range):
        if number_samples < window_length:
            raise InsufficientSignalError(
                f"Signal of {number_samples} samples is shorter than one window ({window_length} samples)"
            )
        period_bounds(period_range, number_frames(number_samples, window_length, step_length))

    def _notify(self, completed, total):
        if self.progress is not None:
            self.progress(completed, total)

    def _background(self, audio_signal, window_function, step_length, period_range, cutoff):
        """
        Original REPET on a (samples, channels) signal.

        Returns:
            Background signal, same shape as audio_signal
        """
        number_samples, number_channels = audio_signal.shape
        window_length = len(window_function)

        background = np.zeros((number_samples, number_channels))
        for channel_index in range(number_channels):
            audio_stft = stft(audio_signal[:, channel_index], window_function, step_length)

            # Magnitude spectrogram with DC and without mirrored frequencies
            spectrogram = np.abs(audio_stft[:window_length // 2 + 1])

            # Squared to emphasize the peaks of periodicity
            period = repeating_periods(beat_spectrum(spectrogram ** 2), period_range)

            mask = full_spectrum_mask(repeating_mask(spectrogram, period), cutoff)
            background[:, channel_index] = istft(mask * audio_stft, window_function, step_length)[:number_samples]

        return background

    def original(self, audio_signal, sample_rate):
        """
        Original REPET: one repeating period for the whole signal.

        Args:
            audio_signal: Audio signal (samples,) or (samples, channels)
            sample_rate: Sample rate

        Returns:
            Background signal, same shape as audio_signal
        """
        audio_signal, mono = self._as_channels(audio_signal)
        window_length, window_function, step_length, period_range, cutoff = self.stft_parameters(sample_rate)
        self._check_length(len(audio_signal), window_length, step_length, period_range)

        background = self._background(audio_signal, window_function, step_length, period_range, cutoff)

        return background[:, 0] if mono else background

    def extended(self, audio_signal, sample_rate):
        """
        REPET extended: the original REPET on overlapping segments,
        cross-faded with a triangular window.

        Args:
            audio_signal: Audio signal (samples,) or (samples, channels)
            sample_rate: Sample rate

        Returns:
            Background signal, same shape as audio_signal
        """
        audio_signal, mono = self._as_channels(audio_signal)
        window_length, window_function, step_length, period_range, cutoff = self.stft_parameters(sample_rate)
        number_samples = len(audio_signal)

        segment_length = int(np.floor(self.segment_length * sample_rate + 0.5))
        segment_step = int(np.floor(self.segment_step * sample_rate + 0.5))
        segment_overlap = segment_length - segment_step

        # One segment if the signal is too short, otherwise the last one
        # could be longer
        if number_samples < segment_length + segment_step:
            number_segments = 1
        else:
            number_segments = 1 + (number_samples - segment_length) // segment_step
        shortest = number_samples if number_segments == 1 else segment_length
        self._check_length(shortest, window_length, step_length, period_range)

        segment_window = triang(2 * segment_overlap)
        fade_in = segment_window[:segment_overlap, np.newaxis]
        fade_out = segment_window[segment_overlap:, np.newaxis]

        background = np.zeros_like(audio_signal)
        for segment_index in range(number_segments):
            if number_segments == 1:
                start, stop = 0, number_samples
            else:
                start = segment_index * segment_step
                stop = number_samples if segment_index == number_segments - 1 else start + segment_length

            background_segment = self._background(
                audio_signal[start:stop], window_function, step_length, period_range, cutoff
            )

            if segment_index > 0:
                background[start:start + segment_overlap] *= fade_out
                background_segment[:segment_overlap] *= fade_in
            background[start:stop] += background_segment

            self._notify(segment_index + 1, number_segments)

        return background[:, 0] if mono else background

    def adaptive(self, audio_signal, sample_rate):
        """
        Adaptive REPET: one repeating period per time frame, from a beat
        spectrogram, and a period-synchronous median filter.

        Args:
            audio_signal: Audio signal (samples,) or (samples, channels)
            sample_rate: Sample rate

        Returns:
            Background signal, same shape as audio_signal
        """
        audio_signal, mono = self._as_channels(audio_signal)
        window_length, window_function, step_length, period_range, cutoff = self.stft_parameters(sample_rate)
        number_samples, number_channels = audio_signal.shape

        analysis_length, analysis_step = self._to_frames(
            (self.analysis_length, self.analysis_step), sample_rate, step_length
        )
        if analysis_step < 1:
            raise InvalidParameterError(f"analysis_step {self.analysis_step} s is shorter than one frame")
        try:
            period_bounds(period_range, analysis_length)
        except InsufficientSignalError as error:
            raise InvalidParameterError(f"analysis_length is too short: {error}") from error
        self._check_length(number_samples, window_length, step_length, period_range)

        background = np.zeros((number_samples, number_channels))
        for channel_index in range(number_channels):
            audio_stft = stft(audio_signal[:, channel_index], window_function, step_length)
            spectrogram = np.abs(audio_stft[:window_length // 2 + 1])

            beat_spectra = beat_spectrogram(spectrogram ** 2, analysis_length, analysis_step, self.progress)
            periods = repeating_periods(beat_spectra, period_range)

            mask = adaptive_repeating_mask(spectrogram, periods, self.median_window_points, self.progress)
            mask = full_spectrum_mask(mask, cutoff)
            background[:, channel_index] = istft(mask * audio_stft, window_function, step_length)[:number_samples]

        return background[:, 0] if mono else background

    def sim(self, audio_signal, sample_rate):
        """REPET-SIM (similarity matrix) is not implemented."""
        raise NotImplementedError("REPET-SIM is not implemented")

    def load_audio(self, filepath):
        """
        Load audio file, keeping its sample rate and channels.

        Args:
            filepath: Path to audio file

        Returns:
            audio: Audio signal (samples,) or (samples, channels)
            sr: Sample rate
        """
        audio, sr = librosa.load(filepath, sr=None, mono=False)

        # librosa returns (channels, samples)
        if audio.ndim > 1:
            audio = audio.T

        return audio, sr

    def separate(self, filepath, method='original', output_background=None, output_foreground=None):
        """
        Separate audio into background and foreground components.

        Args:
            filepath: Input audio file path
            method: 'original', 'extended' or 'adaptive'
            output_background: Output path for background track
            output_foreground: Output path for foreground track

        Returns:
            background: Background audio signal
            foreground: Foreground audio signal
            sr: Sample rate
        """
        if method not in METHODS:
            raise InvalidParameterError(f"Unknown method {method!r}, expected one of {METHODS}")

        print(f"Loading audio file: {filepath}")
        audio, sr = self.load_audio(filepath)

        print(f"Running REPET ({method})...")
        background = getattr(self, method)(audio, sr)
        foreground_signal = foreground(audio, background)

        if output_background:
            print(f"Saving background to: {output_background}")
            sf.write(output_background, background, sr)

        if output_foreground:
            print(f"Saving foreground to: {output_foreground}")
            sf.write(output_foreground, foreground_signal, sr)

        print("Separation complete!")
        return background, foreground_signal, sr


def foreground(audio_signal, background_signal):
    """Foreground signal: the audio signal minus its background."""
    return np.asarray(audio_signal, dtype=float) - background_signal


def separate_stationary(audio_signal, sample_rate, **options):
    """Background signal with the original REPET (see REPET for the options)."""
    return REPET(**options).original(audio_signal, sample_rate)


def separate_segmented(audio_signal, sample_rate, **options):
    """Background signal with REPET extended (see REPET for the options)."""
    return REPET(**options).extended(audio_signal, sample_rate)


def separate_adaptive(audio_signal, sample_rate, **options):
    """Background signal with the adaptive REPET (see REPET for the options)."""
    return REPET(**options).adaptive(audio_signal, sample_rate)


def separate_similarity(audio_signal, sample_rate, **options):
    """REPET-SIM placeholder, raises NotImplementedError."""
    return REPET(**options).sim(audio_signal, sample_rate)


def main(argv=None):
    """
    Command-line interface for REPET algorithm.
    """
    import argparse

    parser = argparse.ArgumentParser(description='REPET Audio Source Separation')
    parser.add_argument('input', help='Input audio file')
    parser.add_argument('--method', choices=METHODS, default='original', help='REPET variant')
    parser.add_argument('--background', default='background.wav', help='Output background file')
    parser.add_argument('--foreground', default='foreground.wav', help='Output foreground file')
    parser.add_argument('--window-duration', type=float, default=0.040,
                        help='STFT window duration in seconds')
    parser.add_argument('--period-range', type=float, nargs=2, default=[1, 10], metavar=('MIN', 'MAX'),
                        help='Repeating period range in seconds')
    parser.add_argument('--cutoff-frequency', type=float, default=100,
                        help='Cutoff frequency in Hz of the foreground high-pass')
    parser.add_argument('--segment-length', type=float, default=10,
                        help='Segment length in seconds (extended)')
    parser.add_argument('--segment-step', type=float, default=5,
                        help='Segment step in seconds (extended)')
    parser.add_argument('--median-points', type=int, default=5,
                        help='Points of the median filter (adaptive)')

    args = parser.parse_args(argv)

    def report(completed, total):
        print(f"  {completed}/{total}", end='\r' if completed < total else '\n')

    repet = REPET(window_duration=args.window_duration,
                  period_range=args.period_range,
                  cutoff_frequency=args.cutoff_frequency,
                  segment_length=args.segment_length,
                  segment_step=args.segment_step,
                  median_window_points=args.median_points,
                  progress=report)
    repet.separate(args.input,
                   method=args.method,
                   output_background=args.background,
                   output_foreground=args.foreground)


if __name__ == '__main__':
    main()

"""
Tests for the REPET variants
Builds synthetic audio with repeating patterns and checks the separation
"""

import numpy as np
import pytest
import soundfile as sf

from repet import (
    REPET,
    InsufficientSignalError,
    InvalidParameterError,
    RepetError,
    foreground,
    main,
    separate_adaptive,
    separate_segmented,
    separate_similarity,
    separate_stationary,
)
from repet_dsp import beat_spectrum, repeating_periods, stft

SR = 8000
# STFT step at 8 kHz with the default 40 ms window
STEP = 256


def create_test_audio(period_frames=40, repetitions=10, burst_frames=(55, 170, 290), seed=0):
    """
    Create a synthetic test audio with a repeating pattern (background)
    and short noise bursts on a few frames (foreground).

    Args:
        period_frames: Period of the repeating pattern in STFT frames
        repetitions: Number of repetitions of the pattern
        burst_frames: Start frames of the 5-frame noise bursts
        seed: Random seed

    Returns:
        mixed: Mixed signal
        repeating: Pure repeating signal
        bursts: Pure foreground signal
    """
    rng = np.random.default_rng(seed)

    pattern = 0.3 * rng.standard_normal(period_frames * STEP)
    repeating = np.tile(pattern, repetitions)

    bursts = np.zeros_like(repeating)
    for frame in burst_frames:
        start = frame * STEP
        bursts[start:start + 5 * STEP] = 0.9 * rng.standard_normal(5 * STEP)

    return repeating + bursts, repeating, bursts


def note_sequence(frequencies, note_frames, number_samples, amplitude=0.5):
    """
    Repeating sequence of smoothly enveloped notes, one note per frequency.

    The period is len(frequencies) * note_frames STFT frames.
    """
    note_length = note_frames * STEP
    t = np.arange(note_length) / SR
    envelope = np.hanning(note_length)
    pattern = np.concatenate([amplitude * envelope * np.sin(2 * np.pi * f * t) for f in frequencies])
    repetitions = int(np.ceil(number_samples / len(pattern)))
    return np.tile(pattern, repetitions)[:number_samples]


def energy(signal):
    return float(np.sum(np.square(signal)))


# -----------------------------------------------------------------------------
# Original REPET
# -----------------------------------------------------------------------------

def test_repet_finds_period():
    """The beat spectrum of the mixture peaks at the pattern period."""
    mixed, _, _ = create_test_audio()
    window_length, window_function, step_length, period_range, _ = REPET(period_range=(1, 2)).stft_parameters(SR)
    assert step_length == STEP

    spectrogram = np.abs(stft(mixed, window_function, step_length)[:window_length // 2 + 1])
    period = repeating_periods(beat_spectrum(spectrogram ** 2), period_range)

    assert period == 40


def test_repet_recovers_repeating_pattern():
    mixed, repeating, _ = create_test_audio()

    background = separate_stationary(mixed, SR, period_range=(1, 2))

    assert background.shape == mixed.shape
    assert 0.9 < energy(background) / energy(repeating) < 1.1
    # Closer to the repeating pattern than the mixture is
    assert energy(background - repeating) < energy(mixed - repeating)


def test_repet_output_shape():
    mixed, _, _ = create_test_audio()
    stereo = np.stack([mixed, 0.5 * mixed], axis=1)

    assert separate_stationary(mixed, SR, period_range=(1, 2)).shape == mixed.shape
    assert separate_stationary(stereo, SR, period_range=(1, 2)).shape == stereo.shape


def test_repet_channels_are_independent():
    """Each channel gets the same background as when processed alone."""
    left, _, _ = create_test_audio()
    right = note_sequence((200, 300, 400, 600), 12, len(left))
    stereo = np.stack([left, right], axis=1)

    background = separate_stationary(stereo, SR, period_range=(1, 2))

    np.testing.assert_allclose(background[:, 0], separate_stationary(left, SR, period_range=(1, 2)))
    np.testing.assert_allclose(background[:, 1], separate_stationary(right[:, np.newaxis], SR, period_range=(1, 2))[:, 0])


# 23297 samples are the fewest that hold three 1 s periods at 8 kHz
@pytest.mark.parametrize("number_samples", [23297, 3 * SR + 512, 12 * SR])
@pytest.mark.parametrize("separate", [separate_stationary, separate_segmented, separate_adaptive])
def test_silence_gives_silent_background(separate, number_samples):
    silence = np.zeros((number_samples, 2))
    with np.errstate(divide='raise', invalid='raise'):
        background = separate(silence, SR)
    assert background.shape == silence.shape
    np.testing.assert_array_equal(background, 0.0)


def test_foreground_is_mixture_minus_background():
    mixed, _, _ = create_test_audio()
    background = separate_stationary(mixed, SR, period_range=(1, 2))
    np.testing.assert_allclose(foreground(mixed, background) + background, mixed)


def test_low_frequencies_stay_in_background():
    """Content below the cutoff frequency goes entirely to the background."""
    mixed, _, _ = create_test_audio()
    low = 0.1 * np.sin(2 * np.pi * 40 * np.arange(len(mixed)) / SR)

    background = separate_stationary(mixed + low, SR, period_range=(1, 2))
    reference = separate_stationary(mixed, SR, period_range=(1, 2))

    # The mask is forced to one below the cutoff, so the tone passes unchanged
    # except for leakage into the bins above it
    assert energy(background - reference - low) < 0.05 * energy(low)


# -----------------------------------------------------------------------------
# REPET extended
# -----------------------------------------------------------------------------

def two_regime_audio():
    """16 s of a 40-frame note pattern changing to a 48-frame one at 5.76 s."""
    number_samples = 16 * SR
    change = 3 * 15360
    first = note_sequence((150, 190, 230, 270), 10, change)
    second = note_sequence((350, 400, 450, 500), 12, number_samples - change)
    return np.concatenate([first, second])


def test_extended_matches_original_outside_overlaps():
    audio = two_regime_audio()
    options = dict(period_range=(1, 2), segment_length=8, segment_step=4)

    background = separate_segmented(audio, SR, **options)
    first = separate_stationary(audio[:8 * SR], SR, period_range=(1, 2))
    last = separate_stationary(audio[8 * SR:], SR, period_range=(1, 2))

    assert background.shape == audio.shape
    np.testing.assert_allclose(background[:4 * SR], first[:4 * SR])
    np.testing.assert_allclose(background[12 * SR:], last[4 * SR:])


def test_extended_crossfade_is_smoother_than_concatenation():
    """Cross-fading two segments jumps less than cutting from one to the other."""
    audio = two_regime_audio()
    start, stop = 4 * SR, 8 * SR

    background = separate_segmented(audio, SR, period_range=(1, 2), segment_length=8, segment_step=4)
    first = separate_stationary(audio[:8 * SR], SR, period_range=(1, 2))
    second = separate_stationary(audio[4 * SR:12 * SR], SR, period_range=(1, 2))

    # Worst jump when switching from the first to the second segment
    # anywhere in their overlap
    naive_jump = np.max(np.abs(second[1:stop - start] - first[start:stop - 1]))
    crossfade_jump = np.max(np.abs(np.diff(background[start:stop])))

    assert np.isfinite(crossfade_jump)
    assert crossfade_jump < naive_jump


def test_extended_single_segment_for_short_signal():
    mixed, _, _ = create_test_audio()
    np.testing.assert_allclose(
        separate_segmented(mixed, SR, period_range=(1, 2)),
        separate_stationary(mixed, SR, period_range=(1, 2)),
    )


def test_extended_reports_progress():
    calls = []
    repet = REPET(period_range=(1, 2), segment_length=8, segment_step=4,
                  progress=lambda done, total: calls.append((done, total)))
    repet.extended(two_regime_audio(), SR)
    assert calls == [(1, 3), (2, 3), (3, 3)]


# -----------------------------------------------------------------------------
# Adaptive REPET
# -----------------------------------------------------------------------------

def test_adaptive_recovers_repeating_pattern():
    mixed, repeating, _ = create_test_audio()

    background = separate_adaptive(mixed, SR, period_range=(1, 2))

    assert background.shape == mixed.shape
    assert 0.8 < energy(background) / energy(repeating) < 1.2
    assert energy(background - repeating) < energy(mixed - repeating)


def test_adaptive_reports_progress():
    mixed, _, _ = create_test_audio()
    calls = []
    REPET(period_range=(1, 2), progress=lambda done, total: calls.append((done, total))).adaptive(mixed, SR)
    assert calls
    assert calls[-1][0] == calls[-1][1]


def test_adaptive_analysis_too_short():
    mixed, _, _ = create_test_audio()
    with pytest.raises(InvalidParameterError):
        separate_adaptive(mixed, SR, period_range=(1, 2), analysis_length=2)


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

def test_error_hierarchy():
    assert issubclass(InvalidParameterError, RepetError)
    assert issubclass(InsufficientSignalError, RepetError)
    assert issubclass(RepetError, ValueError)


@pytest.mark.parametrize("options", [
    dict(window_duration=0),
    dict(period_range=(0, 10)),
    dict(period_range=(5, 1)),
    dict(period_range=(1, 2, 3)),
    dict(cutoff_frequency=-1),
    dict(segment_length=0),
    dict(segment_step=12),
    dict(analysis_step=0),
    dict(median_window_points=0),
    dict(median_window_points=2.5),
])
def test_invalid_parameters(options):
    with pytest.raises(InvalidParameterError):
        REPET(**options)


def test_cutoff_at_nyquist():
    mixed, _, _ = create_test_audio()
    with pytest.raises(InvalidParameterError):
        separate_stationary(mixed, SR, cutoff_frequency=SR / 2)


def test_period_shorter_than_a_frame():
    mixed, _, _ = create_test_audio()
    with pytest.raises(InvalidParameterError):
        separate_stationary(mixed, SR, period_range=(0.001, 2))


def test_signal_shorter_than_window():
    with pytest.raises(InsufficientSignalError):
        separate_stationary(np.ones(100), SR)


def test_signal_shorter_than_three_periods():
    with pytest.raises(InsufficientSignalError):
        separate_stationary(np.ones(2 * SR), SR, period_range=(1, 10))
    with pytest.raises(InsufficientSignalError):
        separate_segmented(np.ones(2 * SR), SR, period_range=(1, 10))
    with pytest.raises(InsufficientSignalError):
        separate_adaptive(np.ones(2 * SR), SR, period_range=(1, 10))


@pytest.mark.parametrize("separate", [separate_stationary, separate_segmented, separate_adaptive])
def test_signal_one_sample_short_of_three_periods(separate):
    with pytest.raises(InsufficientSignalError):
        separate(np.zeros(23296), SR)


def test_signal_with_too_many_dimensions():
    with pytest.raises(InvalidParameterError):
        separate_stationary(np.zeros((SR, 2, 2)), SR)


def test_similarity_is_not_implemented():
    with pytest.raises(NotImplementedError):
        separate_similarity(np.zeros(4 * SR), SR)


# -----------------------------------------------------------------------------
# Files and command line
# -----------------------------------------------------------------------------

def write_test_file(path, seconds=4):
    number_samples = seconds * SR
    left = note_sequence((200, 300, 400, 600), 4, number_samples)
    right = note_sequence((250, 500, 350, 700), 4, number_samples)
    sf.write(path, np.stack([left, right], axis=1), SR)


def test_separate_file(tmp_path):
    input_path = tmp_path / "input.wav"
    write_test_file(input_path)

    repet = REPET(period_range=(0.5, 1))
    background, foreground_signal, sr = repet.separate(
        str(input_path),
        output_background=str(tmp_path / "background.wav"),
        output_foreground=str(tmp_path / "foreground.wav"),
    )

    audio, _ = repet.load_audio(str(input_path))
    assert sr == SR
    assert background.shape == audio.shape == (4 * SR, 2)
    np.testing.assert_allclose(background + foreground_signal, audio, atol=1e-6)
    assert (tmp_path / "background.wav").exists()
    assert (tmp_path / "foreground.wav").exists()


def test_separate_unknown_method(tmp_path):
    with pytest.raises(InvalidParameterError):
        REPET().separate(str(tmp_path / "missing.wav"), method='sim')


@pytest.mark.parametrize("method", ['original', 'extended', 'adaptive'])
def test_command_line(tmp_path, method):
    input_path = tmp_path / "input.wav"
    background_path = tmp_path / "bg.wav"
    foreground_path = tmp_path / "fg.wav"
    write_test_file(input_path)

    main([str(input_path),
          '--method', method,
          '--background', str(background_path),
          '--foreground', str(foreground_path),
          '--period-range', '0.5', '1'])

    background, sr = sf.read(str(background_path))
    assert sr == SR
    assert background.shape == (4 * SR, 2)
    assert foreground_path.exists()

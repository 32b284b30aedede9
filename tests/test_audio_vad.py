"""Tests for the voice activity detection module."""

from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from speechcore.audio.vad import (
    VADEventType,
    VADState,
    VoiceActivityDetector,
    rms_energy,
    spectral_centroid,
    zero_crossing_rate,
)
from speechcore.config import VADConfig
from speechcore.errors import DeviceError


def collect_events(vad):
    events = []
    vad.on_event(events.append)
    return events


def event_types(events):
    return [e.type for e in events]


class TestFeatures:
    """Tests for the per-frame acoustic features."""

    def test_rms_energy(self):
        """Test RMS of a constant signal equals its magnitude."""
        assert rms_energy(np.full(100, 0.5, dtype=np.float32)) == pytest.approx(0.5)
        assert rms_energy(np.zeros(0, dtype=np.float32)) == 0.0

    def test_rms_energy_of_sine(self, make_tone):
        """Test RMS of a sine is amplitude over root two."""
        assert rms_energy(make_tone(2000.0, 1024, amplitude=0.5)) == pytest.approx(0.5 / np.sqrt(2), rel=1e-3)

    def test_spectral_centroid_tracks_frequency(self, make_tone):
        """Test the centroid sits near a pure tone's frequency."""
        low = spectral_centroid(make_tone(300.0, 1024), 16000)
        high = spectral_centroid(make_tone(3000.0, 1024), 16000)
        assert low == pytest.approx(300.0, abs=150.0)
        assert high == pytest.approx(3000.0, abs=150.0)

    def test_spectral_centroid_of_silence(self):
        """Test a silent frame has zero centroid."""
        assert spectral_centroid(np.zeros(1024, dtype=np.float32), 16000) == 0.0

    def test_zero_crossing_rate(self):
        """Test an alternating signal crosses on every pair."""
        alternating = np.tile(np.array([1.0, -1.0], dtype=np.float32), 50)
        assert zero_crossing_rate(alternating) == pytest.approx(0.99)
        assert zero_crossing_rate(np.ones(100, dtype=np.float32)) == 0.0
        assert zero_crossing_rate(np.ones(1, dtype=np.float32)) == 0.0


class TestSpeechScore:
    """Tests for the weighted speech score."""

    def test_all_features_pass(self):
        """Test a frame passing every check scores the sensitivity."""
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0))
        assert vad.speech_score(0.5, 2000.0, 0.25) == pytest.approx(1.0)

    def test_score_scales_with_sensitivity(self):
        """Test sensitivity multiplies the vote."""
        vad = VoiceActivityDetector(VADConfig(sensitivity=0.5))
        assert vad.speech_score(0.5, 2000.0, 0.25) == pytest.approx(0.5)

    def test_individual_weights(self):
        """Test each feature contributes its weight."""
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0))
        assert vad.speech_score(0.5, 0.0, 0.0) == pytest.approx(0.4)
        assert vad.speech_score(0.0, 2000.0, 0.0) == pytest.approx(0.3)
        assert vad.speech_score(0.0, 0.0, 0.25) == pytest.approx(0.3)

    def test_zcr_above_upper_bound_fails(self):
        """Test a very high crossing rate does not count as speech."""
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0))
        assert vad.speech_score(0.0, 0.0, 0.9) == 0.0

    def test_spectral_vote_uses_centroid_cutoff(self):
        """Test the spectral vote follows the centroid cutoff, not spectral_threshold."""
        low = VoiceActivityDetector(VADConfig(sensitivity=1.0, spectral_threshold=0.0))
        high = VoiceActivityDetector(VADConfig(sensitivity=1.0, spectral_threshold=0.99))
        assert low.speech_score(0.0, 2000.0, 0.0) == high.speech_score(0.0, 2000.0, 0.0)

        cutoff = VoiceActivityDetector(VADConfig(sensitivity=1.0, spectral_centroid_hz=2500.0))
        assert cutoff.speech_score(0.0, 2000.0, 0.0) == 0.0

    def test_score_monotonic_in_energy(self):
        """Test raising energy never lowers the score."""
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0))
        scores = [vad.speech_score(e, 2000.0, 0.25) for e in (0.0, 0.005, 0.02, 0.5)]
        assert scores == sorted(scores)


class TestStateMachine:
    """Tests for speech segmentation driven by process_frame."""

    @pytest.fixture
    def vad(self, fake_clock):
        config = VADConfig(sensitivity=1.0, noise_floor_learning=False)
        return VoiceActivityDetector(config, clock=fake_clock)

    def test_initial_state(self, vad):
        """Test a new detector is silent."""
        assert vad.current_state == VADState.SILENCE
        assert not vad.is_speaking
        assert not vad.is_active

    def test_speech_frame_starts_speech(self, vad, speech_frame):
        """Test one speech frame emits a single speech_start."""
        events = collect_events(vad)

        assert vad.process_frame(speech_frame, timestamp=0.0) is True
        assert vad.process_frame(speech_frame, timestamp=100.0) is True

        assert event_types(events) == [VADEventType.SPEECH_START]
        assert events[0].timestamp == 0.0
        assert events[0].confidence == 0.8
        assert vad.is_speaking

    def test_silence_frame_stays_silent(self, vad, silence_frame):
        """Test silence produces no events."""
        events = collect_events(vad)
        assert vad.process_frame(silence_frame, timestamp=0.0) is False
        assert events == []
        assert vad.current_state == VADState.SILENCE

    def test_noise_detected_once(self, vad, make_tone):
        """Test loud non-speech enters noise and emits one event."""
        events = collect_events(vad)
        hum = make_tone(100.0, 1024, amplitude=0.5)

        vad.process_frame(hum, timestamp=0.0)
        vad.process_frame(hum, timestamp=100.0)

        assert event_types(events) == [VADEventType.NOISE_DETECTED]
        assert vad.current_state == VADState.NOISE

    def test_segment_emits_speech_end(self, vad, speech_frame, silence_frame):
        """Test a 300ms utterance closes after the silence timeout."""
        events = collect_events(vad)

        for t in (0.0, 100.0, 200.0, 300.0):
            vad.process_frame(speech_frame, timestamp=t)
        for t in (400.0, 800.0, 1300.0):
            vad.process_frame(silence_frame, timestamp=t)
        assert vad.is_speaking

        vad.process_frame(silence_frame, timestamp=1400.0)

        types = event_types(events)
        assert types == [
            VADEventType.SPEECH_START,
            VADEventType.SPEECH_END,
            VADEventType.SPEECH_SEGMENT,
            VADEventType.SILENCE_DETECTED,
        ]
        end = events[1]
        assert end.duration == pytest.approx(300.0)
        assert end.timestamp == 1400.0
        segment = events[2]
        assert segment.audio.size > 0
        assert segment.audio.size % 1024 == 0
        assert events[3].duration == pytest.approx(1100.0)
        assert vad.current_state == VADState.SILENCE

    def test_short_segment_counts_false_positive(self, vad, speech_frame, silence_frame):
        """Test an utterance below the minimum duration is discarded."""
        events = collect_events(vad)

        vad.process_frame(speech_frame, timestamp=0.0)
        vad.process_frame(speech_frame, timestamp=100.0)
        vad.process_frame(silence_frame, timestamp=1200.0)

        assert VADEventType.SPEECH_END not in event_types(events)
        assert VADEventType.SILENCE_DETECTED in event_types(events)
        stats = vad.get_stats()
        assert stats.false_positives == 1
        assert stats.speech_segments == 0

    def test_stats_after_segment(self, vad, speech_frame, silence_frame):
        """Test durations and accuracy after one segment."""
        for t in (0.0, 100.0, 200.0, 300.0):
            vad.process_frame(speech_frame, timestamp=t)
        vad.process_frame(silence_frame, timestamp=1400.0)

        stats = vad.get_stats()
        assert stats.speech_segments == 1
        assert stats.total_speech_time == pytest.approx(300.0)
        assert stats.total_silence_time == pytest.approx(1100.0)
        assert stats.average_speech_duration == pytest.approx(300.0)
        assert stats.accuracy == pytest.approx(300.0 / 1400.0 * 100)

    def test_zero_stats(self, vad):
        """Test a fresh detector reports zeroes."""
        stats = vad.get_stats()
        assert stats.speech_segments == 0
        assert stats.average_speech_duration == 0.0
        assert stats.average_silence_duration == 0.0
        assert stats.accuracy == 0.0

    def test_current_segment_audio(self, vad, speech_frame, silence_frame):
        """Test in-progress audio is exposed only during speech."""
        assert vad.current_segment_audio.size == 0
        vad.process_frame(speech_frame, timestamp=0.0)
        assert vad.current_segment_audio.size == 1024
        vad.process_frame(speech_frame, timestamp=300.0)
        assert vad.current_segment_audio.size == 2048

    def test_mark_false_negative(self, vad):
        """Test false negatives are counted."""
        vad.mark_false_negative()
        assert vad.get_stats().false_negatives == 1

    def test_reset_session(self, vad, speech_frame):
        """Test reset returns to silence and clears stats."""
        vad.process_frame(speech_frame, timestamp=0.0)
        vad.mark_false_negative()
        vad.reset_session()

        assert vad.current_state == VADState.SILENCE
        assert vad.get_stats().false_negatives == 0
        assert vad.feature_history["energy"] == []

    def test_callback_error_does_not_break_detection(self, vad, speech_frame):
        """Test a failing subscriber is isolated from others."""
        failing = MagicMock(side_effect=RuntimeError("boom"))
        vad.on_event(failing)
        events = collect_events(vad)

        vad.process_frame(speech_frame, timestamp=0.0)

        failing.assert_called_once()
        assert event_types(events) == [VADEventType.SPEECH_START]

    def test_off_event(self, vad, speech_frame):
        """Test removed callbacks stop receiving events."""
        callback = MagicMock()
        vad.on_event(callback)
        vad.off_event(callback)
        vad.process_frame(speech_frame, timestamp=0.0)
        callback.assert_not_called()


class TestFlush:
    """Tests for closing an open segment on demand."""

    @pytest.fixture
    def vad(self, fake_clock):
        return VoiceActivityDetector(VADConfig(sensitivity=1.0, noise_floor_learning=False), clock=fake_clock)

    def test_flush_emits_speech_end(self, vad, fake_clock, speech_frame):
        """Test flush closes a long enough segment."""
        events = collect_events(vad)
        vad.process_frame(speech_frame, timestamp=fake_clock())
        fake_clock.advance(500.0)

        vad.flush()

        assert event_types(events)[1:] == [VADEventType.SPEECH_END, VADEventType.SPEECH_SEGMENT]
        assert events[1].duration == pytest.approx(500.0)
        assert vad.current_state == VADState.SILENCE

    def test_flush_short_segment(self, vad, fake_clock, speech_frame):
        """Test flushing a short segment counts a false positive."""
        events = collect_events(vad)
        vad.process_frame(speech_frame, timestamp=fake_clock())
        fake_clock.advance(50.0)

        vad.flush()

        assert VADEventType.SPEECH_END not in event_types(events)
        assert vad.get_stats().false_positives == 1

    def test_flush_streamed_segment_uses_sample_time(self, make_clock, make_tone):
        """Test a streamed segment is closed at the end of the received audio."""
        clock = make_clock(start=5000.0)
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0, noise_floor_learning=False), clock=clock)
        events = collect_events(vad)
        vad.process_audio(make_tone(2000.0, 8000))
        start = next(e for e in events if e.type == VADEventType.SPEECH_START)

        # Capture paused for ten seconds before the flush
        clock.advance(10000.0)
        vad.flush()

        end = next(e for e in events if e.type == VADEventType.SPEECH_END)
        assert end.timestamp == pytest.approx(5500.0)
        assert end.duration == pytest.approx(5500.0 - start.timestamp)
        assert end.duration < 1000.0

    def test_flush_when_silent(self, vad):
        """Test flush is a no-op outside speech."""
        events = collect_events(vad)
        vad.flush()
        assert events == []

    def test_stop_flushes(self, vad, fake_clock, speech_frame):
        """Test stop closes an open segment."""
        events = collect_events(vad)
        vad.process_frame(speech_frame, timestamp=fake_clock())
        fake_clock.advance(400.0)

        vad.stop()

        assert VADEventType.SPEECH_END in event_types(events)


class TestNoiseFloor:
    """Tests for noise floor learning."""

    def test_noise_floor_is_median_times_ratio(self, make_tone):
        """Test the learned floor and threshold."""
        config = VADConfig(noise_floor_samples=5, energy_ratio=3.0)
        vad = VoiceActivityDetector(config)
        frames = [make_tone(2000.0, 1024, amplitude=a) for a in (0.01, 0.05, 0.02, 0.04, 0.03)]
        energies = [rms_energy(f) for f in frames]

        assert vad.is_learning_noise_floor
        for i, frame in enumerate(frames):
            vad.process_frame(frame, timestamp=float(i))

        assert not vad.is_learning_noise_floor
        assert vad.noise_floor == pytest.approx(float(np.median(energies)))
        assert vad.adaptive_threshold == pytest.approx(vad.noise_floor * 3.0)
        assert vad.energy_threshold == pytest.approx(vad.adaptive_threshold)

    def test_noise_floor_frozen_after_learning(self, make_tone):
        """Test later frames do not move the learned floor."""
        vad = VoiceActivityDetector(VADConfig(noise_floor_samples=3))
        for i in range(3):
            vad.process_frame(make_tone(2000.0, 1024, amplitude=0.01), timestamp=float(i))
        learned = vad.noise_floor

        for i in range(5):
            vad.process_frame(make_tone(2000.0, 1024, amplitude=0.5), timestamp=10.0 + i)

        assert vad.noise_floor == learned

    def test_static_threshold_without_adaptation(self, make_tone):
        """Test the configured threshold is used when adaptation is off."""
        config = VADConfig(noise_floor_samples=2, adaptive_threshold=False, energy_threshold=0.02)
        vad = VoiceActivityDetector(config)
        for i in range(2):
            vad.process_frame(make_tone(2000.0, 1024, amplitude=0.1), timestamp=float(i))
        assert vad.energy_threshold == 0.02

    def test_learning_disabled(self, speech_frame):
        """Test no floor is learned when learning is off."""
        vad = VoiceActivityDetector(VADConfig(noise_floor_learning=False))
        vad.process_frame(speech_frame, timestamp=0.0)
        assert not vad.is_learning_noise_floor
        assert vad.noise_floor == 0.0


class TestProcessAudio:
    """Tests for hop-based analysis of captured audio."""

    def test_one_tick_per_hop(self):
        """Test analysis runs once per complete hop."""
        vad = VoiceActivityDetector(VADConfig(hop_size=512))

        vad.process_audio(np.zeros(1600, dtype=np.float32))
        assert len(vad.feature_history["energy"]) == 3

        vad.process_audio(np.zeros(448, dtype=np.float32))
        assert len(vad.feature_history["energy"]) == 4

    def test_multichannel_is_mixed_down(self):
        """Test 2-D input is averaged to mono."""
        vad = VoiceActivityDetector(VADConfig(hop_size=512))
        vad.process_audio(np.zeros((1024, 2), dtype=np.float32))
        assert len(vad.feature_history["energy"]) == 2

    def test_speech_detected_from_stream(self, make_clock, make_tone):
        """Test a sustained tone starts speech with sample-derived timestamps."""
        clock = make_clock(start=5000.0)
        vad = VoiceActivityDetector(VADConfig(sensitivity=1.0, noise_floor_learning=False), clock=clock)
        events = collect_events(vad)

        vad.process_audio(make_tone(2000.0, 4096))

        assert vad.is_speaking
        starts = [e for e in events if e.type == VADEventType.SPEECH_START]
        assert len(starts) == 1
        assert starts[0].timestamp > 5000.0
        assert starts[0].timestamp <= 5000.0 + 4096 * 1000.0 / 16000

    def test_history_bounded(self):
        """Test feature history keeps the last ten frames."""
        vad = VoiceActivityDetector(VADConfig(hop_size=512))
        vad.process_audio(np.zeros(512 * 15, dtype=np.float32))
        assert len(vad.feature_history["zero_crossing_rate"]) == 10


class TestUpdateConfig:
    """Tests for runtime reconfiguration."""

    def test_update_sensitivity(self):
        """Test new settings apply immediately."""
        vad = VoiceActivityDetector()
        vad.update_config(sensitivity=0.4)
        assert vad.config.sensitivity == 0.4

    def test_resize_window(self):
        """Test a new frame size resizes the analysis window."""
        vad = VoiceActivityDetector()
        vad.update_config(frame_size=2048)
        assert vad._window.size == 2048

    def test_invalid_update_keeps_config(self):
        """Test invalid settings are rejected and nothing changes."""
        vad = VoiceActivityDetector()
        with pytest.raises(ValueError):
            vad.update_config(sensitivity=2.0)
        assert vad.config.sensitivity == 0.8


class TestStream:
    """Tests for the detector's own microphone stream."""

    def test_initialize_without_device(self):
        """Test DeviceError when no input device exists."""
        vad = VoiceActivityDetector()
        with patch("speechcore.audio.vad.sd.query_devices", side_effect=ValueError("no device")):
            with pytest.raises(DeviceError):
                vad.initialize()

    def test_initialize_opens_stream(self):
        """Test the stream is opened with hop-sized blocks."""
        vad = VoiceActivityDetector(VADConfig(hop_size=256, frame_size=1024))
        with patch("speechcore.audio.vad.sd.query_devices"), \
                patch("speechcore.audio.vad.sd.InputStream") as input_stream:
            vad.initialize()

        kwargs = input_stream.call_args.kwargs
        assert kwargs["blocksize"] == 256
        assert kwargs["samplerate"] == 16000
        assert kwargs["channels"] == 1

    def test_start_and_stop(self):
        """Test start runs the stream and stop releases it."""
        vad = VoiceActivityDetector()
        with patch("speechcore.audio.vad.sd.query_devices"), \
                patch("speechcore.audio.vad.sd.InputStream") as input_stream:
            stream = MagicMock()
            input_stream.return_value = stream

            vad.start()
            assert vad.is_active
            stream.start.assert_called_once()

            vad.stop()

        assert not vad.is_active
        stream.stop.assert_called_once()
        stream.close.assert_called_once()

    def test_stream_finished_goes_dormant(self, speech_frame):
        """Test an unexpected stream end reports an error and stops analysis."""
        vad = VoiceActivityDetector()
        errors = []
        vad.on_error(errors.append)
        vad._listening = True

        vad._on_stream_finished()

        assert vad.is_dormant
        assert not vad.is_active
        assert len(errors) == 1
        assert isinstance(errors[0], DeviceError)

        vad.process_audio(speech_frame)
        assert vad.feature_history["energy"] == []

    def test_audio_callback_queues_mono(self):
        """Test the stream callback flattens and queues samples."""
        vad = VoiceActivityDetector()
        vad._audio_callback(np.ones((512, 1), dtype=np.float32), 512, {}, None)
        queued = vad._audio_queue.get_nowait()
        assert queued.shape == (512,)

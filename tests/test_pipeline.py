"""
End-to-end tests for the reconstruction pipeline.

Tests:
- Cold start, single event, burst across a tick boundary
- Publish schedule and burst behaviour
- Adaptive threshold rebalancing
- Dimension mismatch, out-of-bounds events
- Reconfiguration mid-stream
- Saving frames to disk
- Shutdown idempotence
"""

import os
import shutil
import tempfile
import unittest

import numpy as np
import torch

from eventcomb.config import CalibrationParams, FilterParams, ReconstructionOptions
from eventcomb.data.events import EventBatch
from eventcomb.errors import PipelineShutdownError
from eventcomb.io.sinks import ListFrameSink
from eventcomb.pipeline import CombReconstructor

# Short delays keep the ring buffers small
SMALL_FILTER = FilterParams(tick=1e-5, d1=1e-4, d2=1e-5)
COARSE_FILTER = FilterParams(tick=1e-3, d1=3e-3, d2=1e-3)


def make_batch(events, height=16, width=16):
    """Build a batch from (x, y, t, polarity) tuples."""
    if not events:
        return EventBatch.empty(height, width)
    x, y, t, p = zip(*events)
    return EventBatch(x=np.array(x), y=np.array(y), t=np.array(t), p=np.array(p),
                      height=height, width=width)


class CountingSink(ListFrameSink):

    def __init__(self):
        super().__init__()
        self.close_calls = 0

    def close(self):
        super().close()
        self.close_calls += 1


class TestScenarios(unittest.TestCase):

    def test_cold_start_no_events(self):
        sink = ListFrameSink()
        reconstructor = CombReconstructor(sink=sink, filter_params=SMALL_FILTER)
        frames = reconstructor.process_batch(make_batch([]))

        self.assertEqual(frames, [])
        self.assertEqual(len(sink), 0)
        self.assertTrue(reconstructor.initialised)
        self.assertEqual(reconstructor.log_intensity.abs().sum().item(), 0.0)
        self.assertEqual(reconstructor.comb.delay_line.storage.abs().sum().item(), 0.0)

    def test_single_on_event(self):
        sink = ListFrameSink()
        options = ReconstructionOptions(publish_framerate=100.0, contrast_threshold_on=0.1)
        reconstructor = CombReconstructor(options, filter_params=SMALL_FILTER, sink=sink)

        frames = reconstructor.process_batch(
            make_batch([(10, 10, 0.001, True)], height=128, width=128)
        )

        self.assertEqual(len(frames), 1)
        self.assertEqual(len(sink), 1)
        self.assertEqual(frames[0].timestamp, 0.001)
        self.assertEqual(frames[0].encoding, "mono8")
        self.assertEqual(frames[0].image.shape, (128, 128))

        L = reconstructor.log_intensity
        self.assertAlmostEqual(L[10, 10].item(), 0.1)
        self.assertEqual(torch.count_nonzero(L).item(), 1)
        # The first event only aligns the filter grid
        self.assertEqual(reconstructor.comb.ticks, 0)
        self.assertEqual(reconstructor.output.abs().sum().item(), 0.0)

    def test_burst_across_tick_boundary(self):
        reconstructor = CombReconstructor(filter_params=SMALL_FILTER)
        reconstructor.process_batch(make_batch([
            (10, 10, 0.0, True),
            (10, 10, 0.00002, True),
        ]))

        comb = reconstructor.comb
        self.assertEqual(comb.ticks, 2)
        self.assertEqual(comb.cursor, 2)
        # Both catch-up ticks store L after the second integration
        for slot in (0, 1):
            stored = comb.delay_line.storage[slot, 0]
            self.assertAlmostEqual(stored[10, 10].item(), 0.2)
        self.assertTrue(torch.equal(comb.grab_delay(1, 1), comb.output))

    def test_cursor_matches_tick_count(self):
        reconstructor = CombReconstructor(filter_params=SMALL_FILTER)
        events = [(3, 3, i * 3.7e-5, i % 2 == 0) for i in range(40)]
        reconstructor.process_batch(make_batch(events))
        comb = reconstructor.comb
        self.assertGreater(comb.ticks, comb.buffer_length)
        self.assertEqual(comb.cursor, comb.ticks % comb.buffer_length)


class TestPublishSchedule(unittest.TestCase):

    def test_publish_deadlines(self):
        options = ReconstructionOptions(publish_framerate=100.0)
        reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER)
        frames = reconstructor.process_batch(make_batch([
            (1, 1, 0.0, True),
            (1, 1, 0.005, True),
            (1, 1, 0.01, True),
            (1, 1, 0.011, False),
            (1, 1, 0.05, True),
        ]))
        self.assertEqual([f.timestamp for f in frames], [0.0, 0.01, 0.05])
        self.assertAlmostEqual(reconstructor.t_next_publish, 0.06)

    def test_burst_emits_single_frame(self):
        options = ReconstructionOptions(publish_framerate=100.0)
        reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER)
        reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))
        frames = reconstructor.process_batch(make_batch([(1, 1, 0.1, True)]))
        self.assertEqual(len(frames), 1)
        self.assertAlmostEqual(reconstructor.t_next_publish, 0.11)

    def test_publishing_disabled(self):
        options = ReconstructionOptions(publish_framerate=0.0)
        reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER)
        frames = reconstructor.process_batch(make_batch([(1, 1, 0.0, True), (2, 2, 0.1, True)]))
        self.assertEqual(frames, [])
        self.assertEqual(reconstructor.frames_published, 0)

    def test_degenerate_range_skips_frame(self):
        options = ReconstructionOptions(publish_framerate=100.0, auto_adjust_dynamic_range=True)
        sink = ListFrameSink()
        reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER, sink=sink)
        with self.assertLogs("eventcomb.display.mapper", level="WARNING"):
            frames = reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))
        self.assertEqual(frames, [])
        self.assertEqual(len(sink), 0)
        self.assertAlmostEqual(reconstructor.t_next_publish, 0.01)


class TestAdaptiveThresholds(unittest.TestCase):

    def test_rebalancing(self):
        """Twice as many ON as OFF events drive the OFF threshold to -0.2."""
        options = ReconstructionOptions(auto_detect_contrast_thresholds=True,
                                        publish_framerate=0.0)
        reconstructor = CombReconstructor(
            options,
            filter_params=COARSE_FILTER,
            calibration_params=CalibrationParams(event_density_min=100.0),
        )

        events = []
        rng = np.random.default_rng(3)
        times = np.sort(rng.uniform(0.0, 0.01, size=300))
        for i, t in enumerate(times):
            x, y = 1 + i % 7, 1 + (i // 7) % 7
            events.append((x, y, float(t), i % 3 != 0))
        reconstructor.process_batch(make_batch(events, height=8, width=8))

        calibrator = reconstructor.calibrator
        self.assertEqual(calibrator.n_recalibrations, 1)
        self.assertEqual(calibrator.threshold_on, 0.1)
        self.assertAlmostEqual(calibrator.threshold_off, -0.2, delta=0.002)
        self.assertAlmostEqual(reconstructor.t_next_recalibrate, times[-1] + 0.05)

    def test_recalibration_rate(self):
        options = ReconstructionOptions(auto_detect_contrast_thresholds=True,
                                        publish_framerate=0.0)
        reconstructor = CombReconstructor(
            options,
            filter_params=COARSE_FILTER,
            calibration_params=CalibrationParams(event_density_min=0.0),
        )
        reconstructor.process_batch(make_batch([(1, 1, 0.01, True), (2, 2, 0.011, False)]))
        reconstructor.process_batch(make_batch([(1, 1, 0.02, True), (2, 2, 0.03, False)]))
        self.assertEqual(reconstructor.calibrator.n_recalibrations, 1)
        reconstructor.process_batch(make_batch([(1, 1, 0.07, True)]))
        self.assertEqual(reconstructor.calibrator.n_recalibrations, 2)

    def test_counters_untouched_with_user_thresholds(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        reconstructor.process_batch(make_batch([(1, 1, 0.01, True)]))
        self.assertEqual(reconstructor.calibrator.count_on.sum(), 0.0)
        self.assertEqual(reconstructor.calibrator.n_recalibrations, 0)


class TestFaults(unittest.TestCase):

    def test_dimension_mismatch_rejected(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))
        with self.assertLogs("eventcomb.pipeline", level="WARNING"):
            frames = reconstructor.process_batch(
                make_batch([(2, 2, 0.001, True)], height=32, width=32)
            )
        self.assertEqual(frames, [])
        self.assertEqual(reconstructor.batches_rejected, 1)
        self.assertEqual(reconstructor.log_intensity[2, 2].item(), 0.0)
        self.assertEqual(tuple(reconstructor.log_intensity.shape), (16, 16))

    def test_out_of_bounds_events_dropped(self):
        sink = ListFrameSink()
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER, sink=sink)
        reconstructor.process_batch(make_batch([
            (0, 5, 0.0, True),
            (5, 0, 0.001, True),
            (16, 5, 0.002, True),
        ]))
        self.assertEqual(reconstructor.log_intensity.abs().sum().item(), 0.0)
        # Dropped events do not drive the schedulers either
        self.assertIsNone(reconstructor.comb.t_next_store)
        self.assertEqual(len(sink), 0)


class TestReconfigure(unittest.TestCase):

    def test_new_threshold_applies_to_next_event(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        reconstructor.process_batch(make_batch([(4, 4, 0.0, True)]))
        reconstructor.reconfigure({"Contrast_threshold_ON": 0.3})
        reconstructor.process_batch(make_batch([(4, 4, 0.0001, True)]))
        self.assertAlmostEqual(reconstructor.log_intensity[4, 4].item(), 0.4)
        self.assertEqual(reconstructor.options.contrast_threshold_on, 0.3)

    def test_replace_whole_options(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        new = ReconstructionOptions(publish_framerate=5.0)
        self.assertIs(reconstructor.reconfigure(new), new)
        self.assertEqual(reconstructor.reconfigure(spatial_filter_sigma=1.5).spatial_filter_sigma, 1.5)
        self.assertEqual(reconstructor.options.publish_framerate, 5.0)


class TestSaving(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_frames_written_in_sequence(self):
        options = ReconstructionOptions(publish_framerate=100.0, save_dir="frames",
                                        working_dir=self.temp_dir)
        reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER)
        reconstructor.process_batch(make_batch([(1, 1, 0.0, True), (1, 1, 0.02, True)]))

        save_dir = os.path.join(self.temp_dir, "frames")
        self.assertEqual(sorted(os.listdir(save_dir)), ["image0.png", "image1.png"])

    def test_unusable_directory_disables_saving(self):
        blocker = os.path.join(self.temp_dir, "not_a_dir")
        with open(blocker, "w") as f:
            f.write("x")
        options = ReconstructionOptions(publish_framerate=100.0, save_dir="frames",
                                        working_dir=blocker)
        with self.assertLogs("eventcomb.io.sinks", level="ERROR"):
            reconstructor = CombReconstructor(options, filter_params=COARSE_FILTER)
        frames = reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))
        self.assertEqual(len(frames), 1)
        self.assertFalse(reconstructor.writer.enabled)


class TestShutdown(unittest.TestCase):

    def test_idempotent(self):
        sink = CountingSink()
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER, sink=sink)
        reconstructor.process_batch(make_batch([(1, 1, 0.0, True), (1, 1, 0.01, True)]))

        self.assertTrue(reconstructor.shutdown())
        self.assertFalse(reconstructor.shutdown())
        self.assertEqual(sink.close_calls, 1)
        self.assertTrue(reconstructor.comb.delay_line.released)

    def test_shutdown_before_first_batch(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        self.assertTrue(reconstructor.shutdown())
        self.assertFalse(reconstructor.shutdown())

    def test_process_after_shutdown(self):
        reconstructor = CombReconstructor(filter_params=COARSE_FILTER)
        reconstructor.shutdown()
        with self.assertRaises(PipelineShutdownError):
            reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))

    def test_context_manager(self):
        sink = CountingSink()
        with CombReconstructor(filter_params=COARSE_FILTER, sink=sink) as reconstructor:
            reconstructor.process_batch(make_batch([(1, 1, 0.0, True)]))
        self.assertTrue(reconstructor.is_shutdown)
        self.assertEqual(sink.close_calls, 1)


if __name__ == '__main__':
    unittest.main()

"""
Unit tests for the fixed-grid comb filter.

Tests:
- Closed-form response of the difference equation at several delays
- Steady-state (DC) behaviour
- Deadline loop: alignment, tick counts, catch-up
- Cursor and buffer invariants
"""

import unittest

import torch

from eventcomb.config import FilterParams
from eventcomb.core.comb import INPUT_LINE, OUTPUT_LINE, CombFilter


def reference_response(x, lags, rho1, rho2):
    """Scalar evaluation of the difference equation with a zero past."""
    i1, i2, i12 = lags
    y = []

    def past(seq, n, i):
        return seq[n - i] if n - i >= 0 else 0.0

    for n in range(len(x)):
        y.append(
            x[n] - past(x, n, i1) - rho2 * past(x, n, i2) + rho2 * past(x, n, i12)
            + rho1 * past(y, n, i1) + past(y, n, i2) - rho1 * past(y, n, i12)
        )
    return y


class TestDifferenceEquation(unittest.TestCase):
    """Y follows the closed-form response of the recursion."""

    def _run(self, params, inputs, pixel=(1, 2)):
        comb = CombFilter(3, 4, params)
        x0 = torch.zeros(3, 4, dtype=torch.float64)
        outputs = []
        for value in inputs:
            x0[pixel] = value
            y = comb.step(x0)
            outputs.append(y[pixel].item())
            # Other pixels stay at zero
            self.assertEqual(y.abs().sum().item(), abs(y[pixel].item()))
        return comb, outputs

    def test_impulse_at_multiple_delays(self):
        """Single tick impulse in L, several delay configurations."""
        configs = [
            FilterParams(tick=1e-3, d1=5e-3, d2=2e-3, rho1=0.99, rho2=0.999),
            FilterParams(tick=1e-3, d1=4e-3, d2=1e-3, rho1=0.9, rho2=0.95),
            FilterParams(tick=1e-3, d1=10e-3, d2=3e-3, rho1=0.5, rho2=0.7),
        ]
        for params in configs:
            with self.subTest(params=params):
                inputs = [0.0] * 40
                inputs[3] = 0.1
                comb, outputs = self._run(params, inputs)
                expected = reference_response(inputs, comb.lags, params.rho1, params.rho2)
                for got, want in zip(outputs, expected):
                    self.assertAlmostEqual(got, want, places=12)

    def test_step_input(self):
        """Events integrate permanently, so L is a step after an event."""
        params = FilterParams(tick=1e-3, d1=6e-3, d2=2e-3, rho1=0.99, rho2=0.999)
        inputs = [0.0] * 5 + [0.1] * 60
        comb, outputs = self._run(params, inputs)
        expected = reference_response(inputs, comb.lags, params.rho1, params.rho2)
        for got, want in zip(outputs, expected):
            self.assertAlmostEqual(got, want, places=12)

    def test_linearity(self):
        """Response to a scaled input is the scaled response."""
        params = FilterParams(tick=1e-3, d1=5e-3, d2=1e-3, rho1=0.9, rho2=0.99)
        inputs = [0.0, 0.1, 0.1, -0.1, 0.0, 0.2] + [0.2] * 20
        _, outputs = self._run(params, inputs)
        _, scaled = self._run(params, [3.0 * v for v in inputs])
        for a, b in zip(outputs, scaled):
            self.assertAlmostEqual(3.0 * a, b, places=12)


class TestSteadyState(unittest.TestCase):
    """Behaviour for a constant L."""

    def _steady_output(self, params, value, n_ticks):
        comb = CombFilter(2, 2, params)
        x0 = torch.full((2, 2), value, dtype=torch.float64)
        for _ in range(n_ticks):
            comb.step(x0)
        return comb.output

    def test_dc_suppressed_with_unit_feedforward(self):
        """With rho2 = 1 the filter is a pure comb high-pass: Y -> 0."""
        params = FilterParams(tick=1e-3, d1=4e-3, d2=2e-3, rho1=0.5, rho2=1.0)
        y = self._steady_output(params, 0.3, 400)
        self.assertLess(y.abs().max().item(), 1e-9)

    def test_dc_gain_closed_form(self):
        """Steady state equals (i1/i2)(1 - rho2)/(1 - rho1) times the input."""
        params = FilterParams(tick=1e-3, d1=4e-3, d2=2e-3, rho1=0.5, rho2=0.9)
        i1, i2, _ = CombFilter(1, 1, params).lags
        gain = (i1 / i2) * (1 - params.rho2) / (1 - params.rho1)
        y = self._steady_output(params, 0.3, 600)
        self.assertTrue(torch.allclose(y, torch.full_like(y, 0.3 * gain), atol=1e-9))


class TestDeadlineLoop(unittest.TestCase):
    """Tick scheduling driven by event time."""

    def setUp(self):
        self.params = FilterParams(tick=1e-3, d1=3e-3, d2=1e-3)
        self.comb = CombFilter(4, 4, self.params)
        self.x0 = torch.zeros(4, 4, dtype=torch.float64)

    def test_first_event_aligns_without_tick(self):
        self.assertTrue(self.comb.due(0.5))
        self.assertEqual(self.comb.advance_to(0.5, self.x0), 0)
        self.assertEqual(self.comb.t_next_store, 0.5)
        self.assertEqual(self.comb.ticks, 0)

    def test_first_deadline_ticks_with_next_event(self):
        """The tick at the aligned deadline runs once a later event arrives."""
        self.comb.advance_to(0.5, self.x0)
        self.x0[1, 1] = 0.1
        self.assertEqual(self.comb.advance_to(0.5005, self.x0), 1)
        self.assertAlmostEqual(self.comb.output[1, 1].item(), 0.1)
        self.assertAlmostEqual(self.comb.t_next_store, 0.501)

    def test_catch_up_runs_every_missed_tick(self):
        self.comb.advance_to(0.0, self.x0)
        self.assertEqual(self.comb.advance_to(0.0025, self.x0), 3)
        self.assertFalse(self.comb.due(0.0025))
        self.assertAlmostEqual(self.comb.t_next_store, 0.003)

    def test_catch_up_ticks_see_current_input(self):
        """Every tick of a burst stores the same, latest L."""
        self.comb.advance_to(0.0, self.x0)
        self.x0[1, 1] = 0.2
        self.comb.advance_to(0.0025, self.x0)
        for lag in (1, 2, 3):
            self.assertEqual(self.comb.grab_delay(lag, INPUT_LINE)[1, 1].item(), 0.2)

    def test_no_tick_at_deadline(self):
        """Ticks only run for deadlines strictly before the event time."""
        self.comb.advance_to(0.0, self.x0)
        self.assertEqual(self.comb.advance_to(0.0, self.x0), 0)

    def test_cursor_tracks_tick_count(self):
        self.comb.advance_to(0.0, self.x0)
        self.comb.advance_to(0.0185, self.x0)
        self.assertEqual(self.comb.ticks, 19)
        self.assertEqual(self.comb.cursor, self.comb.ticks % self.comb.buffer_length)

    def test_latest_slots_hold_last_tick(self):
        self.comb.advance_to(0.0, self.x0)
        self.x0[2, 3] = 0.1
        self.comb.advance_to(0.0105, self.x0)
        self.assertTrue(torch.equal(self.comb.grab_delay(1, INPUT_LINE), self.x0))
        self.assertTrue(torch.equal(self.comb.grab_delay(1, OUTPUT_LINE), self.comb.output))


class TestBufferSizing(unittest.TestCase):

    def test_default_lags_and_length(self):
        comb = CombFilter(2, 2, FilterParams())
        self.assertEqual(comb.lags, (1000, 100, 1100))
        self.assertEqual(comb.buffer_length, 1101)
        self.assertGreater(comb.buffer_length, max(comb.lags))

    def test_release(self):
        comb = CombFilter(2, 2, FilterParams(tick=1e-3, d1=2e-3, d2=1e-3))
        self.assertTrue(comb.release())
        self.assertFalse(comb.release())


if __name__ == '__main__':
    unittest.main()

"""Tests for the progress reporter."""

from audiobookforge.progress import ProgressReporter


class TestProgressReporter:
    def test_advances_to_completed_count(self):
        reporter = ProgressReporter(3)

        reporter(1, 3, "Uno")
        reporter(2, 3, "Dos")

        assert reporter._bar.n == 2
        reporter.close()

    def test_never_moves_backwards(self):
        reporter = ProgressReporter(3, initial=2)

        reporter(1, 3, "Uno")

        assert reporter._bar.n == 2
        reporter.close()

    def test_total_follows_callback(self):
        reporter = ProgressReporter(2)

        reporter(1, 5, "Uno")

        assert reporter._bar.total == 5
        reporter.close()

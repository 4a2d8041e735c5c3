"""Progress reporting for chapter synthesis."""

from tqdm import tqdm


class ProgressReporter:
    """Wraps tqdm as the job manager's ``(completed, total, label)`` callback."""

    def __init__(self, total_chapters: int, initial: int = 0):
        self._bar = tqdm(
            total=total_chapters,
            initial=initial,
            desc="Synthesis",
            unit="ch",
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} chapters [{elapsed}<{remaining}]",
        )

    def __call__(self, completed: int, total: int, chapter_title: str) -> None:
        """Update progress after a chapter settles."""
        if total != self._bar.total:
            self._bar.total = total
        self._bar.set_postfix_str(chapter_title, refresh=False)
        self._bar.update(max(0, completed - self._bar.n))

    def close(self) -> None:
        self._bar.close()

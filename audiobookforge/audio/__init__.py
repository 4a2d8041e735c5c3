"""Audio processing: ffmpeg helpers, mastering chain and tagging."""

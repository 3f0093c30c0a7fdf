"""Transcode worker: consumes `media.transcode.requested` and probes sources."""

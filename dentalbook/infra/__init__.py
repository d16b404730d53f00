"""Infrastructure: store backends, Redis, realtime feed and email dispatch."""

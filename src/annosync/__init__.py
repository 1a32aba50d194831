"""Line-anchored annotations kept in sync between a local and a shared store."""

__version__ = "0.3.0"

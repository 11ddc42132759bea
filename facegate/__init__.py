"""FaceGate: on-device face recognition with liveness gating and debounced capture events."""

__version__ = "0.1.0"

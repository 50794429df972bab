"""Export job dispatch and external-agent orchestration."""

__version__ = "0.1.0"

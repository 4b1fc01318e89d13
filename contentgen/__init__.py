"""contentgen: AI generation orchestration for a social content platform."""

__version__ = "0.1.0"

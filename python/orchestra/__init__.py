"""Orchestra: autonomous orchestration of dependent agent tasks."""

__version__ = "0.1.0"

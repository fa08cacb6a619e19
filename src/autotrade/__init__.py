"""autotrade - scheduling and execution core for unattended trading bots."""

__version__ = "0.1.0"

"""rebootguard - reboot orchestration agent for patch cycles."""

__version__ = "2.0.0"

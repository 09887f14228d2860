"""Chat-driven booking flows: trigger matching, flow interpretation,
variable extraction, calendar availability and reservation creation."""

__version__ = "0.1.0"

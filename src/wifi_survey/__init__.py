"""Wi-Fi signal and position survey: collect, validate, and persist observations."""

__version__ = "0.3.0"

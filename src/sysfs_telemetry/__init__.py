"""Sample sysfs hardware telemetry (powercap zones, per-core cpufreq)."""

__version__ = "0.1.0"

"""
Collector daemon package for the power/weather logging pipeline.

Samples INA219 power monitors over I2C on a fast cadence, fetches weather
observations over HTTPS on a slow cadence, and appends time-aligned merged
records to a local CSV or SQLite file.

CHANGELOG:
- 2026-10-16: Initial creation

TODO:
- None
"""

"""Test database management and test running.

Builds isolated test databases from the configured aliases (honouring
mirrors and creation dependencies), runs unittest suites against them,
and tears them down again.
"""

__version__ = "0.1.0"

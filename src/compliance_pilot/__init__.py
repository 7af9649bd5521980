"""CompliancePilot controls engine.

Executes declarative compliance controls against tenant datasets and records
each run with tamper-evident evidence.
"""

__version__ = "0.1.0"

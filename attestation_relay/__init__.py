"""
Attestation Relay

Requests Flare Data Connector attestations for real-world facts and
records the verified outcome against a user on the action ledger.
"""

__version__ = "0.1.0"

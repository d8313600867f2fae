# paygate/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module gates every wrapped API call behind an x402 micropayment.
Each wrapped endpoint carries its own price, recipient, network and
facilitator; the gate builds payment requirements from those values.

Key components:
- payment_gate: 402 challenge, payment verification and settlement
- audit: Transaction audit logging

Configuration is loaded from environment variables via paygate.core.config.
"""

"""Bling webhook inbound system.

Each delivery is signature-verified, parsed into a typed event,
deduplicated, applied to the invoice store, and audit-logged.
"""

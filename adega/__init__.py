"""Adega: Bling ERP invoice webhook receiver.

Receives invoice notifications from Bling, verifies their HMAC
signature, deduplicates redeliveries, applies the invoice side effect
to PostgreSQL, and keeps an audit log of every attempt.
"""

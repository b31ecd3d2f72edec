"""Subscription lifecycle and entitlement engine."""

"""Reconcile loop, multisite handshake and RGW CLI grammar."""

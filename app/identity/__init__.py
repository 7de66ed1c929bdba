"""Identity reconciliation package.

Resolves email / phone fragments to clusters of linked ``Contact`` rows:
one primary (the oldest member) plus secondaries pointing directly at it.
"""

"""
Tracking engine: roster sync, edit guard, event ledger, alert dispatch.

Every entry point takes a TrackerContext built once per invocation.
"""

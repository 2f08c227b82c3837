"""Workshop environment provisioning.

Parses bulk workshop credential exports into numbered per-user environment
descriptors, then drives bounded-concurrency, resumable provisioning jobs
over them and reports their status.
"""

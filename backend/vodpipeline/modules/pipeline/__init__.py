"""Transcode pipeline scheduling: claiming, leases, retries and workers."""

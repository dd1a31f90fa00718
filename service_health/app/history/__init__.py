"""
History records package.

Wire models for health history entries, provider events, status records
and health users, the wire date format, and the hybrid-encryption codec
that recovers their payloads.
"""

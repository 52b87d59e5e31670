"""
Release gate: independent re-check before an aircraft returns to service.
"""

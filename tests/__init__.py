"""Test suite for the FPMS form collection core.

This package contains tests for:
- Field options, value coercion and validation
- Form catalog, field management and listing queries
- Assignment grants, expiry and capability answers
- Submission lifecycle, version chains, bulk actions and review queues
- Audit trail emission and the result-envelope facade
"""

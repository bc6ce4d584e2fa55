"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the custodial ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_accumulation.py - Normalized amounts accumulate exactly
2. test_atomicity.py - Rejected and failed operations change nothing
3. test_reentrancy.py - Nested mutating calls are refused
4. test_normalization.py - Decimal rescaling is exact and rounds down

These tests use hypothesis for property-based testing.
"""

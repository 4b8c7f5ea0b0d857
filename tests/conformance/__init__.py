"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the ledger.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. test_supply.py - Shares are never oversold, even under concurrency
2. test_single_distribution.py - At most one distribution per rental statement
3. test_reconciliation.py - Declared payouts sum exactly to the net
4. test_idempotency.py - Re-declaration never writes a second set of rows
5. test_wallet_derivation.py - Balances equal their recomputed history

Concurrency tests run real threads against a file-backed SQLite database,
one session per worker.
"""

"""
AgriTrace Ledger compliance core

Commodity workflow orchestration, certificate approvals and the
marketplace coordination saga.
"""

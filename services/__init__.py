"""
Services for royalty calculation, blueprint materialization and approval.

The run orchestrator and approval workflow live in services/royalty_engine.py;
the calculation components in services/royalty/.
"""

"""
Royalty / license-fee calculation components.

Leaf evaluators (tiers, formulas, rule selection, ERP mapping execution,
minimum guarantees) are pure functions of a transaction and an immutable rule
snapshot. The run orchestrator lives in services/royalty_engine.py.
"""

"""Pure domain logic: quantities, schedules and the dosing pipeline.

Nothing under ``insulin_ledger.core`` performs I/O; every function is a
synchronous transform over immutable inputs.
"""

"""Relational storage: engine policy, ORM tables, and migrations."""

"""
Members module.

Scope:
- Member directory (search, pagination, categories, statistics)
- Member CRUD with duplicate-email protection
- Demographic access control (full vs limited views)
- Bulk CSV import with an archived upload and an import record
"""

"""
Workshops module.

Scope:
- Workshop CRUD with per-role visibility flags
- Self registration/cancellation with capacity and approval rules
- Registration administration (participants, approval, manual payment confirmation, notes)
- Membership-level pricing rules and Canadian sales tax
"""

"""
Committees module.

Committee memberships drive the committee-derived system roles
(committee_member, committee_chair, committee_cochair, committee_manager,
workshop_manager); they are resynced after every membership change.
"""

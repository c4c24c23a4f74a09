"""Direct messages between users and broadcast messages to member groups."""

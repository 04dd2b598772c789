"""Fork state snapshots."""

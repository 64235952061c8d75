"""
Status collaborators: status snapshots, the heartbeat scheduler and weather state.
"""

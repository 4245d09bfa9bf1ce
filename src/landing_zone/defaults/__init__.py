"""Default resources every landing zone account receives."""

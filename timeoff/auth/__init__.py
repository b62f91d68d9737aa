"""Auth module — resolves the calling (employee_id, role) pair."""

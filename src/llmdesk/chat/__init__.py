"""Chat transcript model, response squashing and the session engine."""

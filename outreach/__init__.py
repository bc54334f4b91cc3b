"""Outreach messaging engine: athlete-to-coach email, replies and follow-ups."""

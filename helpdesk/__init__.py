"""Factory helpdesk ticket lifecycle and assignment engine."""

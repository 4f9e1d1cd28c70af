"""Relay Desk: ticket, mail and backup-sharing desk with outbound webhooks."""

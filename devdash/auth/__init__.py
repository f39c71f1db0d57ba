"""
Identity and session core for DevDash.

Design goals:
- One active primary session, in durable or process-scoped storage.
- Enterprise SSO or email/password as the primary scheme, chosen by configuration.
- A GitHub account link that lives independently of the primary session.
"""

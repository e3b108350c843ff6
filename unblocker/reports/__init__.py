"""Reports: persistence helpers, email delivery and the public report page."""

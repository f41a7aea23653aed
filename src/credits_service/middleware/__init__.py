"""HTTP middleware: authentication, rate limiting, log redaction."""

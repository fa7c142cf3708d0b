"""
contracts — Shared wire models and error taxonomy

Both services import from this package so that the inventory authority and the
order requester agree on request/response shapes and on the error codes that
travel between them.
"""

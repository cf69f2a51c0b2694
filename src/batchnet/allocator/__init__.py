"""
Capacity allocator: ledger, service, channel transports, client library and
status API.
"""

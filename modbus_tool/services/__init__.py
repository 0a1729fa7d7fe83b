"""
modbus-tool Services

Layered service architecture:
1. Transport - pymodbus connection, one transaction at a time
2. Scheduler - Priority arbitration of write, metadata, read and probe demand
3. Poller - Register blocks, write batching, continuous polling and status
"""

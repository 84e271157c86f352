# Sync/__init__.py
# Description: Incremental sync protocol: record model, server engines and the device client.

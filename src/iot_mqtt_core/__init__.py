"""
IoT MQTT Core: simulated devices and a presence/dispatch coordinator.

Devices announce presence on a retained register topic (with a last will),
publish telemetry and answer command requests. The coordinator tracks
online devices and sends each one periodic commands.
"""

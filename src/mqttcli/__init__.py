"""
mqttcli — subscribe to one MQTT topic and print what arrives.

Connects to a broker over plain TCP, TLS or mutual TLS, subscribes to a
single topic filter and logs each delivery until SIGINT/SIGTERM.
"""

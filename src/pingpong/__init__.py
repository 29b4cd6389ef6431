"""PingPong chat infrastructure helpers."""

"""Voice agent rollout monitoring and control plane.

Sub-packages:
- observability: metrics registry, exporters, voice metric recorders
- alerting: alert rule engine
- notifications: multi-channel notification dispatcher
- rollout: rollout health controller and store adapters
"""

__version__ = "0.1.0"

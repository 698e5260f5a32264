"""
promtail_provision: Declarative provisioning for the Promtail log shipping agent

Installs the binary or package, renders promtail.yaml from configuration
fragments and keeps the systemd service in the declared state.
"""

__version__ = '0.1.0'

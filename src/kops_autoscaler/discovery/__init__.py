from kops_autoscaler.discovery.nodes import NodeInventory

__all__ = ["NodeInventory"]

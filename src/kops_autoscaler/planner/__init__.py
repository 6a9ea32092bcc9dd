from kops_autoscaler.planner.base import Planner
from kops_autoscaler.planner.kops import KopsPlanner

__all__ = ["KopsPlanner", "Planner"]

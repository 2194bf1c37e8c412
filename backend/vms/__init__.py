"""Visitor management: visit admission and status recalculation."""

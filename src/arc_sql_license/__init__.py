"""Inventory, reconcile and convert licensing of Azure Arc-enabled SQL Server instances."""

__version__ = "0.1.0"

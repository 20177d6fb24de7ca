"""Conditional FX orders."""

from celofx.orders.service import OrderService, order_to_dict

__all__ = ["OrderService", "order_to_dict"]

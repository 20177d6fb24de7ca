"""External price providers."""

from celofx.providers.prices import HttpPriceFeed, PriceFeed, PriceReading

__all__ = ["HttpPriceFeed", "PriceFeed", "PriceReading"]

"""dutystack: tariff resolution, classification ranking and landed cost."""

__version__ = "0.1.0"

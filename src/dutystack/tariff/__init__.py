"""Tariff resolution, classification ranking and landed-cost engine."""

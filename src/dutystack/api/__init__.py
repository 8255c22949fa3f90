"""HTTP surface for the tariff engine."""

"""Auction core: pricing, records, storage, payments and the bid engine."""

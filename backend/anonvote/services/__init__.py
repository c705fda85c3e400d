"""Business logic services; each takes the request's AsyncSession per call"""

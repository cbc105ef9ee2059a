"""
Service layer for billing business logic.
"""

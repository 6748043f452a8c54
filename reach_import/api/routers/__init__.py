"""
FastAPI routers for the route import service.
"""

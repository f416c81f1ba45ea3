"""MCP tool surface for the fetchers package"""

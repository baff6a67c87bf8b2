"""
Entitlement and subscription lifecycle engine for paid course content.
"""

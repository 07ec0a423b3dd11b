"""Source adapters"""

"""Sink implementations"""

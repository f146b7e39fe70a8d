"""Professionals Domain - public profile of service providers"""

"""Service modules"""

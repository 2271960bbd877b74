"""
Domain types of the dispatch pipeline.
"""

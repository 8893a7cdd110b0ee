# url_finder/services/__init__.py
"""Services package for URL Finder."""

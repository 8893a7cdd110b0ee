# url_finder/clients/__init__.py
"""HTTP clients for the upstream services URL Finder depends on."""

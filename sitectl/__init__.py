"""
sitectl - build, development and deployment tooling for the Kaleb.Engineer site.

Runs the Jekyll/Vapor build pipeline with fallbacks, supervises the development
servers with automatic restart, and health-gates Docker Compose deployments.
"""

__version__ = "0.1.0"

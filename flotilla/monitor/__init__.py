"""Terminal rendering for build and deployment reports.

Modules
-------
renderer
    ``ReportRenderer`` turns ``BuildReport`` and ``DeploymentReport`` into
    Rich renderables with color-coded states.
"""

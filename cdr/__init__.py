"""Config Drift Reconciler (CDR).

Watches live cluster resources, compares them against the desired units held
in a configuration registry, reports drift and, when enabled, restores the
desired state and pushes the correction down the scope hierarchy
(base -> dev -> staging -> prod).
"""

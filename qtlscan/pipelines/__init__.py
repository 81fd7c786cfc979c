"""
Genome-wide scan drivers
"""

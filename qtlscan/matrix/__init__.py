"""
Kinship matrices, eigen rotation and design-matrix helpers
"""

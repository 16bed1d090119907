"""
snp-kit: Python toolkit for population genetics on SNP and presence/absence markers.

This package provides tools for:
- Filtering loci (monomorphic loci, sequence tag length)
- Heterozygosity, allele frequencies and fixation indices per population
- PCA/PCoA ordination plots and Mahalanobis-based provenance assignment
- Driving STRUCTURE and NewHybrids
- Forward-in-time simulation of two populations under selection and migration

Main entry point: snpk CLI command
"""

__version__ = "0.1.0"

"""
EnhancerLink - Enhancer Calling and Contact Analysis

Calls candidate enhancers and TSSs from base-pair-resolution transcription
signal, annotates them against a transcript model and joins them to RNA-DNA
contact data.
"""

__version__ = "0.1.0"
__author__ = "EnhancerLink Team"

"""
zkpool command line interface
"""

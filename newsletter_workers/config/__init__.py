"""Issue assembly configuration"""

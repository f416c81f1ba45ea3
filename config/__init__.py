"""Runtime configuration for the fetch engine"""

"""Core login logic"""

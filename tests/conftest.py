"""Shared pytest setup for sindiboleto tests."""
import sys
sys.dont_write_bytecode = True

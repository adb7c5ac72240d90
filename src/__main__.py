"""Entry point: python -m src"""
from src.web.app import main

main()

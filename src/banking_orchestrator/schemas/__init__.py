"""
Schemas for the orchestrator API and knowledge-base search
"""

"""
BillFlow - Vendor Bill Extraction, Matching & Review Engine.

Turns uploaded vendor invoices (PDF or scans) into confidence-scored
bills, matches their line items to the catalog, validates them and
runs the human review that approves them for receiving.

Modules:
    - input_handler: Document normalization (PDF rasterizing, text layer, orientation)
    - layout: Zone detection, zone history and masks
    - ocr_engine: Multi-pass OCR with token consensus
    - extraction: Field candidates, line items and confidence calibration
    - matching: Line item to catalog resolution
    - validation: Hard and soft business rules
    - review: Review state machine, audit trail, undo and queue
    - receiving: Receiving summaries and cost proposals
    - storage: SQLite persistence
    - pipeline / service: Orchestration and the public service surface

Architecture:
    Normalize → Zones → OCR → Candidates → Bill → Match → Validate
                  ↑                                         ↓
                  └──── re-OCR / masks ←──── Review ←───────┘
                                               ↓
                                           Receiving
"""

__version__ = "1.0.0"
__author__ = "BillFlow Team"

__all__ = [
    'input_handler',
    'layout',
    'ocr_engine',
    'extraction',
    'matching',
    'validation',
    'review',
    'receiving',
    'storage',
    'pipeline',
    'service',
    'utils'
]

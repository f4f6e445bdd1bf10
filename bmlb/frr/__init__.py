"""Subpackage set aside for FRR integration; it contains no modules."""
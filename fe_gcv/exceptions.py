"""Custom exceptions for fe_gcv package"""

class FEGCVError(Exception):
    """Base exception for fe_gcv package"""
    pass

class ConfigurationError(FEGCVError):
    """Raised for unsupported loss / dof-evaluation / criterion combinations"""
    pass

class StructureError(FEGCVError):
    """Raised when input matrices, indices or dimensions are inconsistent"""
    pass

class MatrixError(FEGCVError):
    """Raised for finite element assembly errors"""
    pass

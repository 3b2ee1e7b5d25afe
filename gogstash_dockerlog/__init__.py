# Evitar importações pesadas aqui (aiodocker, prometheus) para não gerar efeitos colaterais no startup.
__version__ = "1.0.0"
__all__ = ["__version__"]

class ApplicationError(Exception):
    pass


class ProviderError(ApplicationError):
    pass


class ConfigurationError(ApplicationError):
    pass


class CertificateError(ApplicationError):
    pass

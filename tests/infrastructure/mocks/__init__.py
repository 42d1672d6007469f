"""Mock recorder services: control protocol server and FTP file service."""

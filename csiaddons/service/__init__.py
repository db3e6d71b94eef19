"""gRPC services the sidecar serves on behalf of the CSI driver."""